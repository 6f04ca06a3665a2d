"""Discovery and invocation of extension-provided doctor hooks.

Extensions contribute checks by exposing an entry point in the
``clidoctor.doctor_hooks`` group. The entry point name is the hook topic,
``{prefix}-doctor-{extension}`` for a per-extension hook or
``{prefix}-doctor`` for host-wide checks, and the loaded object is called
with the :class:`~clidoctor.doctor.state.Doctor`. Hooks may be plain
functions (run in a worker thread) or coroutine functions.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Iterable, Mapping, Sequence
from importlib import metadata
from typing import TYPE_CHECKING, Any

from ..events import EventBus, PublishOutcome, Subscription
from .errors import UnknownExtensionError
from .models import EnvironmentFacts

if TYPE_CHECKING:
    from .state import Doctor

LOGGER = logging.getLogger(__name__)

PLUGIN_ENTRY_POINT_GROUP = "clidoctor.plugins"
HOOK_ENTRY_POINT_GROUP = "clidoctor.doctor_hooks"

DoctorHook = Callable[["Doctor"], Any]


def hook_name(prefix: str, extension: str | None = None) -> str:
    """Return the hook topic for *extension*, or the global topic when omitted."""
    if extension is None:
        return f"{prefix}-doctor"
    return f"{prefix}-doctor-{extension}"


def iter_entry_points(group: str) -> Sequence[metadata.EntryPoint]:
    """Return the installed entry points of *group*, sorted by name."""
    return tuple(sorted(metadata.entry_points().select(group=group), key=lambda ep: ep.name))


def load_hooks(entry_points: Iterable[metadata.EntryPoint]) -> dict[str, list[DoctorHook]]:
    """Load hook entry points into a ``topic -> callables`` mapping.

    Entry points that fail to import are logged and skipped.
    """
    hooks: dict[str, list[DoctorHook]] = {}
    for entry_point in entry_points:
        try:
            hook = entry_point.load()
        except Exception as exc:
            LOGGER.warning(
                "Unable to load doctor hook %s (%s): %s",
                entry_point.name,
                entry_point.value,
                exc,
            )
            continue
        if not callable(hook):
            LOGGER.warning("Doctor hook %s is not callable; skipping", entry_point.name)
            continue
        hooks.setdefault(entry_point.name, []).append(hook)
    return hooks


class ExtensionHost:
    """Registers extension hooks on the bus and schedules their invocations."""

    def __init__(
        self,
        doctor: Doctor,
        *,
        prefix: str,
        hooks: Mapping[str, Sequence[DoctorHook]] | None = None,
        bus: EventBus | None = None,
    ) -> None:
        """Bind the host to *doctor*; hooks default to the installed entry points."""
        self._doctor = doctor
        self._prefix = prefix
        self._bus = bus or doctor.bus
        if hooks is None:
            hooks = load_hooks(iter_entry_points(HOOK_ENTRY_POINT_GROUP))
        self._hooks = {topic: list(callables) for topic, callables in hooks.items()}
        self._subscriptions: list[Subscription] = []

    @property
    def facts(self) -> EnvironmentFacts:
        """Return the environment snapshot the host dispatches against."""
        return self._doctor.environment_facts

    def register(self) -> None:
        """Subscribe every known hook to its topic (idempotent)."""
        if self._subscriptions:
            return
        for topic, callables in self._hooks.items():
            for hook in callables:
                self._subscriptions.append(self._bus.subscribe(topic, _adapt(hook)))

    def close(self) -> None:
        """Remove every subscription made by :meth:`register`."""
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()

    def has_hook(self, extension: str) -> bool:
        """Return ``True`` when *extension* exposes a doctor hook."""
        topic = hook_name(self._prefix, extension)
        plugin = self.facts.plugins.get(extension)
        declared = plugin is not None and topic in plugin.hooks
        return declared or topic in self._hooks

    def schedule(self, extension: str | None = None) -> list[asyncio.Task[list[PublishOutcome]]]:
        """Start hook invocations and return the pending tasks.

        With *extension*, only that extension's hook runs; an extension that
        is not installed raises :class:`UnknownExtensionError` before anything
        is published. Without it, every extension hook runs, followed by the
        global hook. Hookless extensions are skipped.
        """
        plugins = self.facts.plugins
        if extension is not None and extension not in plugins:
            raise UnknownExtensionError(extension, tuple(sorted(plugins)))

        self.register()
        targets = [extension] if extension is not None else list(plugins)
        topics: list[str] = []
        for name in targets:
            if self.has_hook(name):
                topics.append(hook_name(self._prefix, name))
            else:
                LOGGER.info("%s doesn't have diagnostic tests to run.", name)
        if extension is None:
            global_topic = hook_name(self._prefix)
            if global_topic in self._hooks:
                topics.append(global_topic)

        payload = {"doctor": self._doctor}
        return [
            asyncio.create_task(self._bus.publish(topic, payload), name=f"hook:{topic}")
            for topic in topics
        ]


def _adapt(hook: DoctorHook) -> Callable[[Mapping[str, Any]], Any]:
    """Turn a ``hook(doctor)`` callable into a bus handler taking ``{"doctor": ...}``."""
    if inspect.iscoroutinefunction(hook):

        async def _call_async(payload: Mapping[str, Any]) -> Any:
            return await hook(payload["doctor"])

        _call_async.__qualname__ = getattr(hook, "__qualname__", repr(hook))
        return _call_async

    async def _call_sync(payload: Mapping[str, Any]) -> Any:
        result = await asyncio.to_thread(hook, payload["doctor"])
        if inspect.isawaitable(result):
            result = await result
        return result

    _call_sync.__qualname__ = getattr(hook, "__qualname__", repr(hook))
    return _call_sync


__all__ = [
    "HOOK_ENTRY_POINT_GROUP",
    "PLUGIN_ENTRY_POINT_GROUP",
    "DoctorHook",
    "ExtensionHost",
    "UnknownExtensionError",
    "hook_name",
    "iter_entry_points",
    "load_hooks",
]
