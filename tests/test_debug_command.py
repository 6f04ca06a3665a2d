"""Tests for the debug command executor."""
from __future__ import annotations

import asyncio
import os
import stat
from pathlib import Path

import pytest

from clidoctor.doctor import DebugCommandExecutor, Doctor, normalize_command


def _write_stub(bin_dir: Path, name: str, body: str) -> Path:
    bin_dir.mkdir(parents=True, exist_ok=True)
    script = bin_dir / name
    script.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return script


@pytest.fixture
def stub_bin(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Put a ``bin`` directory with stub executables first on PATH."""
    bin_dir = tmp_path / "bin"
    _write_stub(
        bin_dir,
        "sfdx",
        'echo "listing orgs $*"\n'
        'echo "NO_COLOR=$NO_COLOR"\n'
        'echo "debug line" >&2\n'
        "exit 2",
    )
    _write_stub(bin_dir, "sleepy", "exec sleep 5")
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    return bin_dir


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("org:list --all", "sfdx org:list --all --dev-debug"),
        ("sfdx org:list --all", "sfdx org:list --all --dev-debug"),
        ("  sfdx org:list --dev-debug  ", "sfdx org:list --dev-debug"),
        ("sfdxtra run", "sfdx sfdxtra run --dev-debug"),
        ("sfdx", "sfdx --dev-debug"),
    ],
)
def test_normalize_command(raw: str, expected: str) -> None:
    """Commands gain the binary prefix and the debug flag exactly once."""
    assert normalize_command(raw, "sfdx") == expected


def test_normalize_command_custom_flag() -> None:
    """The debug flag is configurable."""
    assert normalize_command("status", "tool", "--verbose") == "tool status --verbose"


@pytest.mark.asyncio
async def test_command_output_is_captured(
    doctor: Doctor,
    stub_bin: Path,
    tmp_path: Path,
) -> None:
    """stdout, stderr and the exit code land in run-scoped files and the diagnosis."""
    out_dir = tmp_path / "out"
    executor = DebugCommandExecutor(
        doctor,
        "org:list --all",
        bin_name="sfdx",
        output_dir=out_dir,
        env_overrides={"NO_COLOR": "1"},
    )

    task = executor.start()
    # The name and paths are recorded before the process finishes.
    started = doctor.snapshot()
    assert started.command_name == "sfdx org:list --all --dev-debug"
    assert len(started.log_file_paths) == 2

    result = await task

    assert result.ok
    assert result.exit_code == 2
    assert result.stdout_path == out_dir / f"{doctor.run_id}-command-stdout.log"
    assert result.debug_path == out_dir / f"{doctor.run_id}-command-debug.log"

    stdout = result.stdout_path.read_text(encoding="utf-8")
    assert "listing orgs org:list --all --dev-debug" in stdout
    assert "NO_COLOR=1" in stdout
    assert stdout.endswith("Command exit code: 2\n")
    assert "debug line" in result.debug_path.read_text(encoding="utf-8")

    diagnosis = doctor.snapshot()
    assert diagnosis.command_exit_code == 2
    assert diagnosis.log_file_paths == [str(result.stdout_path), str(result.debug_path)]


@pytest.mark.asyncio
async def test_command_timeout_kills_process(
    doctor: Doctor,
    stub_bin: Path,
    tmp_path: Path,
) -> None:
    """A command running past its timeout is stopped and reported."""
    executor = DebugCommandExecutor(
        doctor,
        "sleepy",
        bin_name="sleepy",
        output_dir=tmp_path,
        timeout=0.2,
    )

    result = await executor.start()

    assert result.timed_out is True
    assert result.ok is False
    assert result.exit_code is not None and result.exit_code != 0
    diagnosis = doctor.snapshot()
    assert diagnosis.command_exit_code == result.exit_code
    assert "did not finish within 0.2 seconds" in diagnosis.suggestions[-1]


@pytest.mark.asyncio
async def test_spawn_failure_becomes_suggestion(
    doctor: Doctor,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An OSError while spawning is reported, not raised."""

    async def refuse(*args: object, **kwargs: object) -> None:
        raise OSError("no shell available")

    monkeypatch.setattr(asyncio, "create_subprocess_shell", refuse)
    executor = DebugCommandExecutor(doctor, "org:list", bin_name="sfdx", output_dir=tmp_path)

    result = await executor.start()

    assert result.exit_code is None
    assert result.error == "no shell available"
    diagnosis = doctor.snapshot()
    assert diagnosis.command_exit_code is None
    assert "Unable to run `sfdx org:list --dev-debug`" in diagnosis.suggestions[-1]
    assert "no shell available" in result.debug_path.read_text(encoding="utf-8")


@pytest.mark.asyncio
async def test_unwritable_output_dir_skips_command(
    doctor: Doctor,
    tmp_path: Path,
    stub_bin: Path,
) -> None:
    """Log files that cannot be created are reported instead of raised."""
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    executor = DebugCommandExecutor(
        doctor, "org:list", bin_name="sfdx", output_dir=blocker / "out"
    )

    result = await executor.start()

    assert result.exit_code is None
    assert result.error is not None
    assert result.stdout_path is None and result.debug_path is None
    diagnosis = doctor.snapshot()
    assert diagnosis.command_name == "sfdx org:list --dev-debug"
    assert diagnosis.command_exit_code is None
    assert diagnosis.log_file_paths == []
    assert "Unable to create the log files" in diagnosis.suggestions[-1]


@pytest.mark.asyncio
async def test_run_requires_start(doctor: Doctor, tmp_path: Path) -> None:
    """Calling ``run`` directly without ``start`` is a programming error."""
    executor = DebugCommandExecutor(doctor, "org:list", bin_name="sfdx", output_dir=tmp_path)

    with pytest.raises(RuntimeError, match="start"):
        await executor.run()
