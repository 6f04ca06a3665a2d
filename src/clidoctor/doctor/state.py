"""The doctor: single owner and sole mutator of a run's :class:`Diagnosis`."""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
import time
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit, urlunsplit

from ..events import DIAGNOSTIC_STATUS_TOPIC, EventBus, PublishOutcome, get_event_bus
from .checks import collect_checks
from .engine import DiagnosticRunner
from .errors import AlreadyInitializedError, DoctorStateError, NotInitializedError
from .models import (
    PROXY_ENV_VARS,
    CheckDefinition,
    CheckOptions,
    DiagnosticResult,
    DiagnosticStatus,
    Diagnosis,
    EnvironmentFacts,
    EnvPair,
)

if TYPE_CHECKING:
    import asyncio

    from ..config import AppConfig

LOGGER = logging.getLogger(__name__)

_SECRET_MARKERS = ("TOKEN", "SECRET", "PASSWORD", "PASSWD", "API_KEY", "AUTH")
REDACTED = "<redacted>"


_run_id_lock = threading.Lock()
_last_run_id = 0


def _next_run_id() -> int:
    """Return a millisecond timestamp that never repeats within the process."""
    global _last_run_id
    with _run_id_lock:
        candidate = int(time.time() * 1000)
        if candidate <= _last_run_id:
            candidate = _last_run_id + 1
        _last_run_id = candidate
        return candidate


def _redact_value(name: str, value: str) -> str:
    upper = name.upper()
    if any(marker in upper for marker in _SECRET_MARKERS):
        return REDACTED
    return value


def _redact_proxy(value: str) -> str:
    """Strip credentials from a proxy URL."""
    try:
        parts = urlsplit(value)
    except ValueError:
        return value
    if not parts.username and not parts.password:
        return value
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"{REDACTED}@{host}", parts.path, parts.query, parts.fragment))


def capture_env_var_groups(
    groups: Sequence[tuple[str, str]],
    environ: Mapping[str, str],
) -> dict[str, tuple[EnvPair, ...]]:
    """Partition *environ* by the configured ``(group, prefix)`` pairs."""
    captured: dict[str, tuple[EnvPair, ...]] = {}
    for group, prefix in groups:
        captured[group] = tuple(
            (name, _redact_value(name, value))
            for name, value in environ.items()
            if name.startswith(prefix)
        )
    return captured


def capture_proxy_env_vars(
    environ: Mapping[str, str],
    *,
    redact: bool = True,
) -> tuple[EnvPair, ...]:
    """Return every recognised proxy variable that is set, in a fixed order."""
    pairs: list[EnvPair] = []
    for spellings in PROXY_ENV_VARS:
        for name in spellings:
            if name in environ:
                value = environ[name]
                pairs.append((name, _redact_proxy(value) if redact else value))
    return tuple(pairs)


class Doctor:
    """Accumulates diagnosis data for one run.

    Every mutation goes through this object and is serialised by an internal
    lock, so checks running concurrently (including extension code running in
    worker threads) can report safely. The doctor subscribes once to the
    ``diagnostic-status`` topic of its bus and records every publication.
    """

    def __init__(
        self,
        facts: EnvironmentFacts,
        *,
        pinned_suggestions: Sequence[str] = (),
        env_var_groups: Sequence[tuple[str, str]] = (),
        cli_config: Mapping[str, object] | None = None,
        bus: EventBus | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """Capture the environment snapshot. No files are written here."""
        resolved_env = dict(os.environ if environ is None else environ)
        self._lock = threading.Lock()
        self._created_dirs: set[Path] = set()
        self._bus = bus or get_event_bus()
        self._proxy_values = dict(capture_proxy_env_vars(resolved_env, redact=False))
        self.run_id = _next_run_id()
        self._diagnosis = Diagnosis(
            run_id=self.run_id,
            environment_facts=facts,
            env_var_groups=capture_env_var_groups(env_var_groups, resolved_env),
            proxy_env_vars=capture_proxy_env_vars(resolved_env),
            cli_config=dict(cli_config or {}),
            suggestions=list(pinned_suggestions),
        )
        self._subscription = self._bus.subscribe(
            DIAGNOSTIC_STATUS_TOPIC, self._on_diagnostic_status
        )

    @classmethod
    def from_config(
        cls,
        facts: EnvironmentFacts,
        config: AppConfig,
        *,
        bus: EventBus | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> Doctor:
        """Build a doctor using the pinned suggestions and groups from *config*."""
        resolved_env = os.environ if environ is None else environ
        cli_config = {
            "bin": config.bin,
            "shell": facts.shell,
            "windows": os.name == "nt",
            "userAgent": facts.user_agent,
            "runtimeVersion": facts.runtime_version,
            "configFile": str(config.config_file),
        }
        return cls(
            facts,
            pinned_suggestions=config.pinned_suggestions,
            env_var_groups=config.env_var_groups,
            cli_config=cli_config,
            bus=bus,
            environ=resolved_env,
        )

    @property
    def bus(self) -> EventBus:
        """Return the event bus the doctor listens on."""
        return self._bus

    @property
    def proxy_values(self) -> dict[str, str]:
        """Return the proxy variables as set, credentials included.

        Only checks compare these; the diagnosis stores the redacted form.
        """
        return dict(self._proxy_values)

    @property
    def environment_facts(self) -> EnvironmentFacts:
        """Return the immutable environment snapshot."""
        return self._diagnosis.environment_facts

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def add_suggestion(self, suggestion: str) -> None:
        """Add a suggestion of the form "because X, we recommend Y"."""
        with self._lock:
            self._diagnosis.suggestions.append(suggestion)

    def add_diagnostic_status(self, result: DiagnosticResult) -> None:
        """Record the verdict of one completed check."""
        with self._lock:
            self._diagnosis.diagnostic_results.append(result)

    def add_plugin_data(self, plugin_name: str, data: Any) -> None:
        """Append a JSON value reported by an extension."""
        try:
            json.dumps(data)
        except (TypeError, ValueError) as exc:
            raise ValueError(
                f"Plugin data for '{plugin_name}' must be JSON serialisable: {exc}"
            ) from exc
        with self._lock:
            self._diagnosis.plugin_specific_data.setdefault(plugin_name, []).append(
                copy.deepcopy(data)
            )

    def set_command_name(self, command_name: str) -> None:
        """Record the debug command that this run executes."""
        with self._lock:
            if self._diagnosis.command_name is not None:
                raise DoctorStateError("The debug command name has already been recorded.")
            self._diagnosis.command_name = command_name

    def set_exit_code(self, code: int) -> None:
        """Record the exit code of the debug command."""
        with self._lock:
            if self._diagnosis.command_exit_code is not None:
                raise DoctorStateError("The debug command exit code has already been recorded.")
            self._diagnosis.command_exit_code = code

    async def report_status(
        self,
        name: str,
        status: DiagnosticStatus | str,
    ) -> list[PublishOutcome]:
        """Publish a check verdict on the bus; the doctor's subscriber records it."""
        result = DiagnosticResult(name=name, status=DiagnosticStatus(status))
        return await self._bus.publish(DIAGNOSTIC_STATUS_TOPIC, result)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def snapshot(self) -> Diagnosis:
        """Return a deep copy of the current diagnosis."""
        with self._lock:
            return copy.deepcopy(self._diagnosis)

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def reserve_path(self, path: str | os.PathLike[str]) -> Path:
        """Return the run-scoped path for *path* and register it.

        The file name becomes ``{run_id}-{name}``. The parent directory is
        created the first time a path inside it is reserved.
        """
        requested = Path(path).expanduser()
        if not requested.is_absolute():
            requested = Path.cwd() / requested
        target = requested.parent / f"{self.run_id}-{requested.name}"
        with self._lock:
            directory = target.parent
            if directory not in self._created_dirs:
                directory.mkdir(parents=True, exist_ok=True)
                self._created_dirs.add(directory)
            location = str(target)
            if location not in self._diagnosis.log_file_paths:
                self._diagnosis.log_file_paths.append(location)
        return target

    def write_file(self, path: str | os.PathLike[str], contents: str) -> Path:
        """Write *contents* to the run-scoped variant of *path*."""
        target = self.reserve_path(path)
        target.write_text(contents, encoding="utf-8")
        return target

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def run_builtin_checks(
        self,
        options: CheckOptions,
        checks: Sequence[CheckDefinition] | None = None,
    ) -> list[asyncio.Task[DiagnosticResult]]:
        """Start every built-in check and return the pending tasks."""
        definitions = checks if checks is not None else collect_checks(options)
        return DiagnosticRunner(self, options, definitions).run()

    def close(self) -> None:
        """Stop listening for status events."""
        self._subscription.cancel()

    def _on_diagnostic_status(self, payload: object) -> None:
        result = _coerce_result(payload)
        self.add_diagnostic_status(result)
        LOGGER.info("%s - %s", result.status.value, result.name)


def _coerce_result(payload: object) -> DiagnosticResult:
    if isinstance(payload, DiagnosticResult):
        return payload
    if isinstance(payload, Mapping):
        name = payload.get("name") or payload.get("testName")
        status = payload.get("status")
        if isinstance(name, str) and status is not None:
            return DiagnosticResult(name=name, status=DiagnosticStatus(str(status)))
    raise ValueError(f"Unsupported diagnostic status payload: {payload!r}")


_instance: Doctor | None = None
_instance_lock = threading.Lock()


def init_doctor(
    facts: EnvironmentFacts,
    config: AppConfig | None = None,
    *,
    bus: EventBus | None = None,
    environ: Mapping[str, str] | None = None,
) -> Doctor:
    """Create the process-wide doctor.

    Raises :class:`AlreadyInitializedError` when a doctor already exists; call
    :func:`reset_doctor` first to start a new run in the same process.
    """
    global _instance
    with _instance_lock:
        if _instance is not None:
            raise AlreadyInitializedError("The doctor has already been initialized.")
        if config is None:
            doctor = Doctor(facts, bus=bus, environ=environ)
        else:
            doctor = Doctor.from_config(facts, config, bus=bus, environ=environ)
        _instance = doctor
        return doctor


def get_doctor() -> Doctor:
    """Return the process-wide doctor."""
    with _instance_lock:
        if _instance is None:
            raise NotInitializedError("The doctor must be initialized before use.")
        return _instance


def reset_doctor() -> None:
    """Tear down the process-wide doctor, detaching it from its bus."""
    global _instance
    with _instance_lock:
        if _instance is not None:
            _instance.close()
        _instance = None


def is_doctor_initialized() -> bool:
    """Return ``True`` when :func:`init_doctor` has been called."""
    with _instance_lock:
        return _instance is not None
