"""Check execution harness for the doctor command."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Iterable, Sequence
from typing import TYPE_CHECKING

from .models import (
    CheckContext,
    CheckDefinition,
    CheckOptions,
    DiagnosticResult,
    DiagnosticStatus,
)

if TYPE_CHECKING:
    from .state import Doctor

LOGGER = logging.getLogger(__name__)


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _unexpected_failure(
    doctor: Doctor,
    check: CheckDefinition,
    exc: BaseException,
) -> DiagnosticStatus:
    LOGGER.warning("Check '%s' raised an unexpected error", check.name, exc_info=exc)
    doctor.add_suggestion(
        f"The '{check.name}' diagnostic could not complete because of an unexpected "
        f"error ({exc.__class__.__name__}: {exc}); rerun the doctor and report the "
        "problem if it persists."
    )
    return DiagnosticStatus.UNKNOWN


def _coerce_status(check: CheckDefinition, value: object) -> DiagnosticStatus:
    if isinstance(value, DiagnosticStatus):
        return value
    try:
        return DiagnosticStatus(str(value))
    except ValueError:
        LOGGER.warning("Check '%s' returned an invalid status %r", check.name, value)
        return DiagnosticStatus.UNKNOWN


async def _run_single_check(
    check: CheckDefinition,
    context: CheckContext,
) -> DiagnosticResult:
    """Run *check* and publish exactly one status for it, whatever happens."""
    start = time.perf_counter()
    try:
        status = _coerce_status(check, await check.run(context))
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        status = _unexpected_failure(context.doctor, check, exc)
    result = DiagnosticResult(name=check.name, status=status)
    LOGGER.debug("Check '%s' finished in %d ms", check.name, _duration_ms(start))
    await context.doctor.report_status(result.name, result.status)
    return result


class DiagnosticRunner:
    """Starts every check at once and hands back the pending tasks."""

    def __init__(
        self,
        doctor: Doctor,
        options: CheckOptions,
        checks: Sequence[CheckDefinition],
    ) -> None:
        """Bind the runner to a doctor and the checks it should start."""
        self._doctor = doctor
        self._options = options
        self._checks = tuple(checks)

    @property
    def checks(self) -> tuple[CheckDefinition, ...]:
        """Return the checks this runner starts."""
        return self._checks

    def run(self) -> list[asyncio.Task[DiagnosticResult]]:
        """Schedule every check; the caller awaits the tasks.

        All checks see the same diagnosis snapshot, taken before any of them
        starts. Must be called from a running event loop.
        """
        context = CheckContext(
            doctor=self._doctor,
            diagnosis=self._doctor.snapshot(),
            options=self._options,
        )
        return [
            asyncio.create_task(_run_single_check(check, context), name=f"check:{check.name}")
            for check in self._checks
        ]


async def wait_for_tasks(tasks: Iterable[Awaitable[object]]) -> list[object]:
    """Wait for every task to settle; failures are logged and returned, not raised."""
    outcomes = await asyncio.gather(*tasks, return_exceptions=True)
    for outcome in outcomes:
        if isinstance(outcome, BaseException):
            LOGGER.warning("Doctor task failed: %s", outcome, exc_info=outcome)
    return list(outcomes)
