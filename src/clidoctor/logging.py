"""Structured operation logging for clidoctor commands.

Each CLI invocation is wrapped in an :class:`OperationScope`. When the scope
closes, a single JSON record is appended to ``operations.jsonl`` in the logs
directory describing the command, its arguments, the steps performed and the
final result. Logging problems never abort a command: the logger disables
itself and carries on.
"""
from __future__ import annotations

import json
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

OPERATIONS_LOG_NAME = "operations.jsonl"


def _sanitize(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _optional_list(values: Iterable[str] | None) -> list[str] | None:
    if values is None:
        return None
    return [str(value) for value in values]


class OperationScope:
    """Collects steps and the outcome of a single CLI operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Record the operation identity; nothing is written until close."""
        self.operation_id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started_at = datetime.now(UTC)
        self._start = time.perf_counter()

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Append a named step to the operation record."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=_optional_list(warnings),
            errors=_optional_list(errors),
            changed=changed,
            backups=_optional_list(backups),
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        rc: int | None = None,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            rc=rc,
            errors=_optional_list(errors) or [message],
            warnings=_optional_list(warnings),
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        context: Mapping[str, object] | None = None,
        **fields: object,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        for key, value in fields.items():
            if value is not None:
                result[key] = value
        if context:
            result["context"] = _sanitize(context)
        self.result = result

    def to_record(self) -> dict[str, Any]:
        """Return the JSON record describing this operation."""
        return {
            "id": self.operation_id,
            "timestamp": self._started_at.isoformat(),
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "steps": list(self.steps),
            "result": self.result,
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
        }


class StructuredLogger:
    """Append-only JSONL writer for operation records."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory; disable logging if it cannot be created."""
        self._logs_dir = logs_dir
        self._operations_log_path = logs_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an operation scope and persist it when the block exits."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", errors=[repr(exc)])
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True))
                handle.write("\n")
        except OSError:
            self._enabled = False


__all__ = ["OPERATIONS_LOG_NAME", "OperationScope", "StructuredLogger"]
