"""Tests for extension hook discovery and dispatch."""
from __future__ import annotations

import asyncio
import threading
from importlib import metadata

import pytest

from clidoctor.doctor import (
    DiagnosticStatus,
    Doctor,
    ExtensionHost,
    PluginInfo,
    UnknownExtensionError,
    hook_name,
)
from clidoctor.doctor.extensions import load_hooks
from clidoctor.events import EventBus
from tests.conftest import make_facts


def _doctor(bus: EventBus, *plugins: PluginInfo) -> Doctor:
    facts = make_facts(plugins={plugin.name: plugin for plugin in plugins})
    return Doctor(facts, bus=bus, environ={})


def test_hook_names() -> None:
    """Per-extension and global hook topics follow the prefix convention."""
    assert hook_name("sf", "plugin-org") == "sf-doctor-plugin-org"
    assert hook_name("sf") == "sf-doctor"


def test_unknown_extension_fails_before_anything_is_published(bus: EventBus) -> None:
    """An unknown plugin raises and no hook or status is ever published."""
    calls: list[str] = []
    doctor = _doctor(bus, PluginInfo(name="plugin-org", version="1.0.0"))
    host = ExtensionHost(
        doctor,
        prefix="sf",
        hooks={"sf-doctor-plugin-org": [lambda d: calls.append("org")]},
    )

    with pytest.raises(UnknownExtensionError) as excinfo:
        host.schedule("plugin-missing")

    assert excinfo.value.name == "plugin-missing"
    assert excinfo.value.available == ("plugin-org",)
    assert "plugin-missing" in str(excinfo.value)
    assert bus.subscriber_count("sf-doctor-plugin-org") == 0
    assert calls == []
    assert doctor.snapshot().diagnostic_results == []


@pytest.mark.asyncio
async def test_all_hooks_run_and_hookless_plugins_are_skipped(bus: EventBus) -> None:
    """Every hooked extension runs once; the global hook runs too."""
    calls: list[str] = []
    doctor = _doctor(
        bus,
        PluginInfo(name="plugin-org", version="1.0.0", hooks=("sf-doctor-plugin-org",)),
        PluginInfo(name="plugin-source", version="1.0.0"),
        PluginInfo(name="plugin-quiet", version="1.0.0"),
    )

    async def source_hook(target: Doctor) -> None:
        target.add_plugin_data("plugin-source", {"tracking": True})
        await target.report_status("source tracking works", DiagnosticStatus.PASS)

    host = ExtensionHost(
        doctor,
        prefix="sf",
        hooks={
            "sf-doctor-plugin-org": [lambda target: calls.append("org")],
            "sf-doctor-plugin-source": [source_hook],
            "sf-doctor": [lambda target: calls.append("global")],
        },
    )

    tasks = host.schedule()
    await asyncio.gather(*tasks)
    host.close()

    assert [task.get_name() for task in tasks] == [
        "hook:sf-doctor-plugin-org",
        "hook:sf-doctor-plugin-source",
        "hook:sf-doctor",
    ]
    assert sorted(calls) == ["global", "org"]
    diagnosis = doctor.snapshot()
    assert diagnosis.plugin_specific_data == {"plugin-source": [{"tracking": True}]}
    assert [result.name for result in diagnosis.diagnostic_results] == ["source tracking works"]
    assert bus.topics() == ["diagnostic-status"]


@pytest.mark.asyncio
async def test_single_plugin_runs_only_its_hook(bus: EventBus) -> None:
    """Selecting a plugin skips other extensions and the global hook."""
    calls: list[str] = []
    doctor = _doctor(
        bus,
        PluginInfo(name="plugin-org", version="1.0.0"),
        PluginInfo(name="plugin-source", version="1.0.0"),
    )
    host = ExtensionHost(
        doctor,
        prefix="sf",
        hooks={
            "sf-doctor-plugin-org": [lambda target: calls.append("org")],
            "sf-doctor-plugin-source": [lambda target: calls.append("source")],
            "sf-doctor": [lambda target: calls.append("global")],
        },
    )

    await asyncio.gather(*host.schedule("plugin-org"))

    assert calls == ["org"]


@pytest.mark.asyncio
async def test_sync_hooks_run_off_the_event_loop(bus: EventBus) -> None:
    """Plain function hooks execute in a worker thread."""
    threads: list[str] = []
    doctor = _doctor(bus, PluginInfo(name="plugin-org", version="1.0.0"))
    host = ExtensionHost(
        doctor,
        prefix="sf",
        hooks={
            "sf-doctor-plugin-org": [
                lambda target: threads.append(threading.current_thread().name)
            ]
        },
    )

    await asyncio.gather(*host.schedule("plugin-org"))

    assert threads and threads[0] != threading.main_thread().name


@pytest.mark.asyncio
async def test_failing_hook_is_isolated(bus: EventBus) -> None:
    """A raising hook is reported in the publish outcome and does not propagate."""
    doctor = _doctor(bus, PluginInfo(name="plugin-org", version="1.0.0"))

    def broken(target: Doctor) -> None:
        raise RuntimeError("hook failed")

    host = ExtensionHost(doctor, prefix="sf", hooks={"sf-doctor-plugin-org": [broken]})

    (outcomes,) = await asyncio.gather(*host.schedule("plugin-org"))

    assert len(outcomes) == 1
    assert outcomes[0].ok is False
    assert outcomes[0].error == "hook failed"


def test_selected_plugin_without_hook_schedules_nothing(bus: EventBus) -> None:
    """A hookless plugin is skipped without error."""
    doctor = _doctor(bus, PluginInfo(name="plugin-org", version="1.0.0"))
    host = ExtensionHost(doctor, prefix="sf", hooks={})

    assert host.schedule("plugin-org") == []
    assert host.has_hook("plugin-org") is False


def test_load_hooks_skips_broken_entry_points() -> None:
    """Entry points that fail to import or are not callable are ignored."""
    entry_points = [
        metadata.EntryPoint(name="sf-doctor-json", value="json:dumps", group="x"),
        metadata.EntryPoint(name="sf-doctor-missing", value="no_such_module:hook", group="x"),
        metadata.EntryPoint(name="sf-doctor-const", value="json.decoder:NaN", group="x"),
    ]

    hooks = load_hooks(entry_points)

    assert list(hooks) == ["sf-doctor-json"]
