"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from clidoctor.doctor import Doctor, EnvironmentFacts, PluginInfo, PluginKind, reset_doctor
from clidoctor.events import EventBus, get_event_bus


@pytest.fixture(autouse=True)
def _isolate_process_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Give every test its own HOME and a clean doctor/bus."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    reset_doctor()
    get_event_bus().clear()
    yield
    reset_doctor()
    get_event_bus().clear()


def make_facts(
    *,
    version: str = "7.160.0",
    plugins: dict[str, PluginInfo] | None = None,
) -> EnvironmentFacts:
    """Return environment facts for a fictional ``sfdx`` install."""
    return EnvironmentFacts(
        tool_name="sfdx",
        tool_version=version,
        plugins=plugins or {},
        os="Linux 6.1",
        shell="bash",
        architecture="linux-x86_64",
        runtime_version="python-v3.12.1",
    )


@pytest.fixture
def bus() -> EventBus:
    """Return a private event bus."""
    return EventBus(subscriber_timeout=2.0)


@pytest.fixture
def facts() -> EnvironmentFacts:
    """Return default environment facts with two plugins."""
    return make_facts(
        plugins={
            "a": PluginInfo(name="a", version="1.0.0", kind=PluginKind.CORE),
            "b": PluginInfo(name="b", version="2.0.0", kind=PluginKind.USER),
        }
    )


@pytest.fixture
def doctor(facts: EnvironmentFacts, bus: EventBus) -> Iterator[Doctor]:
    """Return a doctor bound to a private bus with one pinned suggestion."""
    instance = Doctor(
        facts,
        pinned_suggestions=("check the issue tracker",),
        env_var_groups=(("sfdx", "SFDX_"), ("sf", "SF_")),
        bus=bus,
        environ={"SFDX_ACCESS_TOKEN": "secret", "SF_LOG_LEVEL": "debug", "PATH": "/bin"},
    )
    yield instance
    instance.close()
