"""Collect the environment facts recorded at the start of every doctor run."""
from __future__ import annotations

import json
import logging
import os
import platform
import sys
from collections.abc import Iterable, Mapping
from importlib import metadata
from urllib.parse import unquote, urlsplit

from . import __version__
from .config import AppConfig
from .doctor.extensions import (
    HOOK_ENTRY_POINT_GROUP,
    PLUGIN_ENTRY_POINT_GROUP,
    hook_name,
    iter_entry_points,
)
from .doctor.models import EnvironmentFacts, PluginInfo, PluginKind

LOGGER = logging.getLogger(__name__)

UNKNOWN_VERSION = "unknown"


def collect_environment_facts(
    config: AppConfig,
    *,
    environ: Mapping[str, str] | None = None,
    plugin_entry_points: Iterable[metadata.EntryPoint] | None = None,
    hook_entry_points: Iterable[metadata.EntryPoint] | None = None,
) -> EnvironmentFacts:
    """Return a snapshot of the host tool, its extensions and the machine."""
    resolved_env = os.environ if environ is None else environ
    if plugin_entry_points is None:
        plugin_entry_points = iter_entry_points(PLUGIN_ENTRY_POINT_GROUP)
    if hook_entry_points is None:
        hook_entry_points = iter_entry_points(HOOK_ENTRY_POINT_GROUP)

    plugins = discover_plugins(
        plugin_entry_points,
        hook_entry_points,
        prefix=config.hook_prefix,
        core_plugins=config.core_plugins,
    )
    return EnvironmentFacts(
        tool_name=config.bin,
        tool_version=_tool_version(config.package_name),
        plugins=plugins,
        os=f"{platform.system()} {platform.release()}".strip(),
        shell=_detect_shell(resolved_env),
        architecture=f"{sys.platform}-{platform.machine()}".rstrip("-"),
        runtime_version=f"python-v{platform.python_version()}",
    )


def discover_plugins(
    plugin_entry_points: Iterable[metadata.EntryPoint],
    hook_entry_points: Iterable[metadata.EntryPoint],
    *,
    prefix: str,
    core_plugins: Iterable[str] = (),
) -> dict[str, PluginInfo]:
    """Build :class:`PluginInfo` records from installed entry points.

    A hook belongs to an extension when its entry point name is the
    extension's hook topic or when both ship in the same distribution.
    """
    core = set(core_plugins)
    hooks = list(hook_entry_points)
    plugins: dict[str, PluginInfo] = {}
    for entry_point in plugin_entry_points:
        name = entry_point.name
        if name in plugins:
            LOGGER.debug("Ignoring duplicate plugin entry point %s", name)
            continue
        dist = entry_point.dist
        editable_root = _editable_root(dist)
        if editable_root is not None:
            kind = PluginKind.LINK
        elif name in core:
            kind = PluginKind.CORE
        else:
            kind = PluginKind.USER
        plugins[name] = PluginInfo(
            name=name,
            version=dist.version if dist is not None else UNKNOWN_VERSION,
            kind=kind,
            root=editable_root,
            hooks=_plugin_hooks(name, dist, hooks, prefix),
        )
    return plugins


def _plugin_hooks(
    name: str,
    dist: metadata.Distribution | None,
    hooks: Iterable[metadata.EntryPoint],
    prefix: str,
) -> tuple[str, ...]:
    topic = hook_name(prefix, name)
    found: list[str] = []
    for hook in hooks:
        same_dist = (
            dist is not None and hook.dist is not None and hook.dist.name == dist.name
        )
        if (hook.name == topic or same_dist) and hook.name not in found:
            found.append(hook.name)
    return tuple(found)


def _editable_root(dist: metadata.Distribution | None) -> str | None:
    """Return the source directory when *dist* is an editable install."""
    if dist is None:
        return None
    try:
        raw = dist.read_text("direct_url.json")
    except OSError:
        return None
    if not raw:
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        LOGGER.debug("Ignoring malformed direct_url.json for %s", dist.name)
        return None
    dir_info = payload.get("dir_info") if isinstance(payload, dict) else None
    if not isinstance(dir_info, dict) or not dir_info.get("editable"):
        return None
    url = str(payload.get("url", ""))
    parts = urlsplit(url)
    return unquote(parts.path) if parts.scheme == "file" else url


def _tool_version(package_name: str) -> str:
    try:
        return metadata.version(package_name)
    except metadata.PackageNotFoundError:
        return __version__


def _detect_shell(environ: Mapping[str, str]) -> str:
    shell = environ.get("SHELL") or environ.get("COMSPEC") or ""
    return os.path.basename(shell) if shell else "unknown"


__all__ = ["collect_environment_facts", "discover_plugins"]
