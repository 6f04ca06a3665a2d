"""Run one host CLI command in debug mode and capture its output."""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import IO, TYPE_CHECKING

from .models import CommandRunResult

if TYPE_CHECKING:
    from .state import Doctor

LOGGER = logging.getLogger(__name__)

STDOUT_LOG_NAME = "command-stdout.log"
DEBUG_LOG_NAME = "command-debug.log"
DEFAULT_DEBUG_FLAG = "--dev-debug"
CHUNK_SIZE = 64 * 1024
QUEUE_SIZE = 64

_STDOUT = "stdout"
_STDERR = "stderr"


def normalize_command(
    command: str,
    bin_name: str,
    debug_flag: str = DEFAULT_DEBUG_FLAG,
) -> str:
    """Make *command* start with the host binary and carry the debug flag."""
    full_command = command.strip()
    if full_command != bin_name and not full_command.startswith(f"{bin_name} "):
        full_command = f"{bin_name} {full_command}"
    if debug_flag not in command:
        full_command = f"{full_command} {debug_flag}"
    return full_command


class DebugCommandExecutor:
    """Spawn the debug command and stream its output into run-scoped logs.

    stdout goes to ``{run_id}-command-stdout.log`` followed by a
    ``Command exit code: N`` marker; stderr goes to
    ``{run_id}-command-debug.log``. Both paths are registered with the
    doctor before the process starts.
    """

    def __init__(
        self,
        doctor: Doctor,
        command: str,
        *,
        bin_name: str,
        output_dir: Path,
        debug_flag: str = DEFAULT_DEBUG_FLAG,
        env_overrides: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> None:
        """Normalise the command; nothing runs until :meth:`start`."""
        self._doctor = doctor
        self.command = normalize_command(command, bin_name, debug_flag)
        self._output_dir = output_dir
        self._env_overrides = dict(env_overrides or {})
        self._timeout = timeout
        self.stdout_path: Path | None = None
        self.debug_path: Path | None = None

    def start(self) -> asyncio.Task[CommandRunResult]:
        """Record the command, reserve the log files and schedule the run.

        When the log files cannot be created the command is not run and the
        task resolves to a failed :class:`CommandRunResult`.
        """
        self._doctor.set_command_name(self.command)
        try:
            self.stdout_path = self._doctor.reserve_path(self._output_dir / STDOUT_LOG_NAME)
            self.debug_path = self._doctor.reserve_path(self._output_dir / DEBUG_LOG_NAME)
        except OSError as exc:
            return asyncio.create_task(self._logs_unavailable(exc), name="doctor:command")
        return asyncio.create_task(self.run(), name="doctor:command")

    async def run(self) -> CommandRunResult:
        """Execute the command to completion; never raises for process failures."""
        if self.stdout_path is None or self.debug_path is None:
            raise RuntimeError("DebugCommandExecutor.start() must be called before run().")
        stdout_path, debug_path = self.stdout_path, self.debug_path
        env = dict(os.environ)
        env.update(self._env_overrides)

        with stdout_path.open("a", encoding="utf-8") as stdout_log, debug_path.open(
            "a", encoding="utf-8"
        ) as debug_log:
            try:
                process = await asyncio.create_subprocess_shell(
                    self.command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=env,
                )
            except OSError as exc:
                return self._spawn_failed(exc, debug_log, stdout_path, debug_path)

            queue: asyncio.Queue[tuple[str, bytes] | None] = asyncio.Queue(maxsize=QUEUE_SIZE)
            writer = asyncio.create_task(_write_chunks(queue, stdout_log, debug_log))
            readers = [
                asyncio.create_task(_pump(process.stdout, _STDOUT, queue)),
                asyncio.create_task(_pump(process.stderr, _STDERR, queue)),
            ]
            timed_out = False
            try:
                await asyncio.wait_for(process.wait(), timeout=self._timeout)
            except TimeoutError:
                timed_out = True
                process.kill()
                await process.wait()
                # Grandchildren of the shell can keep the pipes open.
                _, pending = await asyncio.wait(readers, timeout=1.0)
                for reader in pending:
                    reader.cancel()
            await asyncio.gather(*readers, return_exceptions=True)
            await queue.put(None)
            await writer

            exit_code = process.returncode if process.returncode is not None else -1
            stdout_log.write(f"\nCommand exit code: {exit_code}\n")

        self._doctor.set_exit_code(exit_code)
        if timed_out:
            LOGGER.warning("Debug command timed out after %ss: %s", self._timeout, self.command)
            self._doctor.add_suggestion(
                f"The command `{self.command}` did not finish within {self._timeout:g} "
                "seconds and was stopped; its logs are incomplete."
            )
        return CommandRunResult(
            command=self.command,
            exit_code=exit_code,
            stdout_path=stdout_path,
            debug_path=debug_path,
            timed_out=timed_out,
        )

    async def _logs_unavailable(self, exc: OSError) -> CommandRunResult:
        message = (
            f"Unable to create the log files for `{self.command}` in {self._output_dir}: {exc}"
        )
        LOGGER.warning(message)
        self._doctor.add_suggestion(f"{message}. Choose a writable output directory.")
        return CommandRunResult(
            command=self.command,
            exit_code=None,
            stdout_path=self.stdout_path,
            debug_path=self.debug_path,
            error=str(exc),
        )

    def _spawn_failed(
        self,
        exc: OSError,
        debug_log: IO[str],
        stdout_path: Path,
        debug_path: Path,
    ) -> CommandRunResult:
        message = f"Unable to run `{self.command}`: {exc}"
        LOGGER.warning(message)
        debug_log.write(f"{message}\n")
        self._doctor.add_suggestion(
            f"{message}. Check that the command is installed and on your PATH."
        )
        return CommandRunResult(
            command=self.command,
            exit_code=None,
            stdout_path=stdout_path,
            debug_path=debug_path,
            error=str(exc),
        )


async def _pump(
    stream: asyncio.StreamReader | None,
    label: str,
    queue: asyncio.Queue[tuple[str, bytes] | None],
) -> None:
    if stream is None:
        return
    while True:
        chunk = await stream.read(CHUNK_SIZE)
        if not chunk:
            return
        await queue.put((label, chunk))


async def _write_chunks(
    queue: asyncio.Queue[tuple[str, bytes] | None],
    stdout_log: IO[str],
    debug_log: IO[str],
) -> None:
    # Chunks can split multi-byte characters.
    decoders = {
        _STDOUT: codecs.getincrementaldecoder("utf-8")(errors="replace"),
        _STDERR: codecs.getincrementaldecoder("utf-8")(errors="replace"),
    }
    while True:
        item = await queue.get()
        if item is None:
            break
        label, chunk = item
        target = stdout_log if label == _STDOUT else debug_log
        target.write(decoders[label].decode(chunk))
        target.flush()
    stdout_log.write(decoders[_STDOUT].decode(b"", final=True))
    debug_log.write(decoders[_STDERR].decode(b"", final=True))


__all__ = [
    "DEBUG_LOG_NAME",
    "DEFAULT_DEBUG_FLAG",
    "STDOUT_LOG_NAME",
    "DebugCommandExecutor",
    "normalize_command",
]
