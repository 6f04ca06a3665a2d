"""Tests for the doctor orchestrator and its diagnosis."""
from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from clidoctor.config import load_config
from clidoctor.doctor import (
    AlreadyInitializedError,
    DiagnosticResult,
    DiagnosticStatus,
    Doctor,
    DoctorStateError,
    EnvironmentFacts,
    NotInitializedError,
    get_doctor,
    init_doctor,
    is_doctor_initialized,
    reset_doctor,
)
from clidoctor.events import DIAGNOSTIC_STATUS_TOPIC, EventBus


def test_pinned_suggestions_come_first(doctor: Doctor) -> None:
    """A fresh diagnosis holds exactly the pinned suggestions, in order."""
    assert doctor.snapshot().suggestions == ["check the issue tracker"]

    doctor.add_suggestion("upgrade")

    assert doctor.snapshot().suggestions == ["check the issue tracker", "upgrade"]


def test_env_var_groups_are_partitioned_and_redacted(doctor: Doctor) -> None:
    """Each prefix gets its own group; secret-looking values are hidden."""
    diagnosis = doctor.snapshot()

    assert diagnosis.env_var_groups == {
        "sfdx": (("SFDX_ACCESS_TOKEN", "<redacted>"),),
        "sf": (("SF_LOG_LEVEL", "debug"),),
    }


def test_proxy_variables_are_captured_without_credentials(facts: EnvironmentFacts) -> None:
    """Proxy URLs keep host and port but drop user info."""
    doctor = Doctor(
        facts,
        bus=EventBus(),
        environ={
            "HTTPS_PROXY": "http://user:pw@proxy.local:3128",
            "no_proxy": "localhost",
        },
    )

    assert doctor.snapshot().proxy_env_vars == (
        ("HTTPS_PROXY", "http://<redacted>@proxy.local:3128"),
        ("no_proxy", "localhost"),
    )


@pytest.mark.asyncio
async def test_concurrent_status_reports_are_all_recorded(doctor: Doctor) -> None:
    """N concurrent publications produce N diagnostic results."""
    names = [f"check-{index}" for index in range(25)]

    await asyncio.gather(
        *(doctor.report_status(name, DiagnosticStatus.PASS) for name in names)
    )

    diagnosis = doctor.snapshot()
    assert len(diagnosis.diagnostic_results) == len(names)
    assert sorted(result.name for result in diagnosis.diagnostic_results) == sorted(names)


@pytest.mark.asyncio
async def test_status_payload_may_be_a_mapping(doctor: Doctor, bus: EventBus) -> None:
    """Extensions may publish plain mappings using either key spelling."""
    await bus.publish(DIAGNOSTIC_STATUS_TOPIC, {"testName": "plugin check", "status": "warn"})

    assert doctor.snapshot().diagnostic_results == [
        DiagnosticResult(name="plugin check", status=DiagnosticStatus.WARN)
    ]


@pytest.mark.asyncio
async def test_closed_doctor_stops_recording(doctor: Doctor) -> None:
    """After ``close`` the doctor no longer listens to the bus."""
    doctor.close()

    await doctor.report_status("late", DiagnosticStatus.PASS)

    assert doctor.snapshot().diagnostic_results == []


def test_snapshot_is_idempotent_and_detached(doctor: Doctor) -> None:
    """Repeated snapshots are equal; mutating one does not affect the doctor."""
    doctor.add_plugin_data("plugin-org", {"orgs": 2})

    first = doctor.snapshot()
    second = doctor.snapshot()
    assert first == second

    first.suggestions.append("tampered")
    first.plugin_specific_data["plugin-org"][0]["orgs"] = 99

    third = doctor.snapshot()
    assert third == second
    assert third.plugin_specific_data == {"plugin-org": [{"orgs": 2}]}


def test_plugin_data_appends_per_extension(doctor: Doctor) -> None:
    """Plugin data accumulates as a list per extension id."""
    doctor.add_plugin_data("plugin-org", {"a": 1})
    doctor.add_plugin_data("plugin-org", ["b"])

    assert doctor.snapshot().plugin_specific_data == {"plugin-org": [{"a": 1}, ["b"]]}


def test_plugin_data_must_be_json(doctor: Doctor) -> None:
    """Non JSON values are rejected."""
    with pytest.raises(ValueError, match="must be JSON serialisable"):
        doctor.add_plugin_data("plugin-org", {"when": object()})


def test_command_name_and_exit_code_are_set_once(doctor: Doctor) -> None:
    """Set-once fields reject a second write."""
    doctor.set_command_name("sfdx org:list --dev-debug")
    doctor.set_exit_code(2)

    with pytest.raises(DoctorStateError):
        doctor.set_command_name("sfdx other")
    with pytest.raises(DoctorStateError):
        doctor.set_exit_code(0)

    diagnosis = doctor.snapshot()
    assert diagnosis.command_name == "sfdx org:list --dev-debug"
    assert diagnosis.command_exit_code == 2


def test_run_ids_strictly_increase(facts: EnvironmentFacts) -> None:
    """A later doctor never reuses an earlier run id."""
    bus = EventBus()
    first = Doctor(facts, bus=bus, environ={})
    second = Doctor(facts, bus=bus, environ={})

    assert second.run_id > first.run_id
    assert first.snapshot().run_id == first.run_id


def test_construction_writes_nothing(facts: EnvironmentFacts, tmp_path: Path) -> None:
    """No file system activity happens until a path is reserved."""
    Doctor(facts, bus=EventBus(), environ={})

    assert list(tmp_path.iterdir()) == [tmp_path / "home"]


def test_write_file_prefixes_run_id(doctor: Doctor, tmp_path: Path) -> None:
    """Written files are named ``{run_id}-{name}`` and listed once."""
    target = doctor.write_file(tmp_path / "out" / "diagnosis.json", "{}")
    again = doctor.reserve_path(tmp_path / "out" / "diagnosis.json")

    assert target == tmp_path / "out" / f"{doctor.run_id}-diagnosis.json"
    assert again == target
    assert target.read_text(encoding="utf-8") == "{}"
    assert doctor.snapshot().log_file_paths == [str(target)]


def test_relative_paths_resolve_against_cwd(
    doctor: Doctor, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Relative paths are recorded as absolute paths."""
    monkeypatch.chdir(tmp_path)

    target = doctor.reserve_path("command-stdout.log")

    assert target == tmp_path / f"{doctor.run_id}-command-stdout.log"
    assert Path(doctor.snapshot().log_file_paths[0]).is_absolute()


def test_directory_is_created_once(
    doctor: Doctor, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Many writes into one directory create it exactly once."""
    out_dir = tmp_path / "out"
    calls: list[Path] = []
    original_mkdir = Path.mkdir

    def tracking_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        calls.append(self)
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", tracking_mkdir)

    for name in ("a.log", "b.log", "c.log"):
        doctor.write_file(out_dir / name, name)

    assert calls == [out_dir]
    assert len(doctor.snapshot().log_file_paths) == 3


def test_get_doctor_before_init_raises() -> None:
    """Using the process-wide doctor before init is an error."""
    assert is_doctor_initialized() is False
    with pytest.raises(NotInitializedError):
        get_doctor()


def test_init_twice_raises_until_reset(facts: EnvironmentFacts, bus: EventBus) -> None:
    """Re-initialisation is explicit."""
    first = init_doctor(facts, bus=bus, environ={})

    assert get_doctor() is first
    with pytest.raises(AlreadyInitializedError):
        init_doctor(facts, bus=bus, environ={})

    reset_doctor()
    assert bus.subscriber_count(DIAGNOSTIC_STATUS_TOPIC) == 0

    second = init_doctor(facts, bus=bus, environ={})
    assert get_doctor() is second
    assert second.run_id > first.run_id


def test_init_from_config_uses_pinned_suggestions(facts: EnvironmentFacts, bus: EventBus) -> None:
    """Config-driven init seeds suggestions, env groups and CLI config."""
    config = load_config(env={})

    doctor = init_doctor(facts, config, bus=bus, environ={"CLIDOCTOR_BIN": "x"})
    diagnosis = doctor.snapshot()

    assert diagnosis.suggestions == list(config.pinned_suggestions)
    assert diagnosis.env_var_groups["clidoctor"] == (("CLIDOCTOR_BIN", "x"),)
    assert diagnosis.env_var_groups["python"] == ()
    assert diagnosis.cli_config["bin"] == "clidoctor"
    assert diagnosis.cli_config["userAgent"] == facts.user_agent
