"""Data models shared by the doctor engine, its checks and the CLI."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    import httpx

    from .state import Doctor


class DiagnosticStatus(str, Enum):
    """Verdict reported by a single check."""

    PASS = "pass"
    FAIL = "fail"
    WARN = "warn"
    UNKNOWN = "unknown"

    @property
    def is_failure(self) -> bool:
        """Return ``True`` when the status represents a failure."""
        return self is DiagnosticStatus.FAIL


class PluginKind(str, Enum):
    """How an extension is installed."""

    CORE = "core"
    USER = "user"
    LINK = "link"


@dataclass(slots=True, frozen=True)
class DiagnosticResult:
    """Outcome of one completed check."""

    name: str
    status: DiagnosticStatus

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"name": self.name, "status": self.status.value}


@dataclass(slots=True, frozen=True)
class PluginInfo:
    """An installed extension of the host tool."""

    name: str
    version: str
    kind: PluginKind = PluginKind.USER
    root: str | None = None
    hooks: tuple[str, ...] = ()

    @property
    def is_linked(self) -> bool:
        """Return ``True`` for developer (editable) installs."""
        return self.kind is PluginKind.LINK

    def describe(self) -> str:
        """Return the ``name version (kind)`` form used in reports."""
        return f"{self.name} {self.version} ({self.kind.value})"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "version": self.version,
            "kind": self.kind.value,
            "root": self.root,
            "hooks": list(self.hooks),
        }


@dataclass(slots=True, frozen=True)
class EnvironmentFacts:
    """Snapshot of the host tool and machine taken once per run."""

    tool_name: str
    tool_version: str
    plugins: Mapping[str, PluginInfo] = field(default_factory=dict)
    os: str = ""
    shell: str = ""
    architecture: str = ""
    runtime_version: str = ""

    @property
    def user_agent(self) -> str:
        """Return a user agent string in the ``name/version arch runtime`` form."""
        parts = [f"{self.tool_name}/{self.tool_version}"]
        if self.architecture:
            parts.append(self.architecture)
        if self.runtime_version:
            parts.append(self.runtime_version)
        return " ".join(parts)

    def plugin_versions(self) -> list[str]:
        """Return installed extensions as human readable strings."""
        return [plugin.describe() for plugin in self.plugins.values()]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "cliVersion": f"{self.tool_name}/{self.tool_version}",
            "architecture": self.architecture,
            "runtimeVersion": self.runtime_version,
            "osVersion": self.os,
            "shell": self.shell,
            "pluginVersions": self.plugin_versions(),
            "plugins": {name: plugin.to_dict() for name, plugin in self.plugins.items()},
        }


EnvPair = tuple[str, str]

PROXY_ENV_VARS: tuple[tuple[str, str], ...] = (
    ("HTTP_PROXY", "http_proxy"),
    ("HTTPS_PROXY", "https_proxy"),
    ("NO_PROXY", "no_proxy"),
)
NO_PROXY_ENV_VARS = PROXY_ENV_VARS[-1]


@dataclass(slots=True)
class Diagnosis:
    """Everything gathered during one doctor run."""

    run_id: int
    environment_facts: EnvironmentFacts
    env_var_groups: dict[str, tuple[EnvPair, ...]] = field(default_factory=dict)
    proxy_env_vars: tuple[EnvPair, ...] = ()
    cli_config: dict[str, object] = field(default_factory=dict)
    plugin_specific_data: dict[str, list[Any]] = field(default_factory=dict)
    diagnostic_results: list[DiagnosticResult] = field(default_factory=list)
    suggestions: list[str] = field(default_factory=list)
    command_name: str | None = None
    command_exit_code: int | None = None
    log_file_paths: list[str] = field(default_factory=list)

    def results_by_name(self) -> dict[str, list[DiagnosticStatus]]:
        """Group diagnostic results by check name."""
        grouped: dict[str, list[DiagnosticStatus]] = {}
        for result in self.diagnostic_results:
            grouped.setdefault(result.name, []).append(result.status)
        return grouped


VersionLookup = Callable[[str], Awaitable[str]]
HttpClientFactory = Callable[[], "httpx.AsyncClient"]


@dataclass(slots=True, frozen=True)
class CheckOptions:
    """Runtime tunables handed to every check."""

    network_timeout: float = 5.0
    endpoints: tuple[str, ...] = ()
    deprecated_plugins: tuple[str, ...] = ()
    bin: str = "clidoctor"
    package_name: str = "clidoctor"
    version_url: str = "https://pypi.org/pypi/{package}/json"
    version_lookup: VersionLookup | None = None
    http_client_factory: HttpClientFactory | None = None


@dataclass(slots=True, frozen=True)
class CheckContext:
    """Execution context provided to checks."""

    doctor: Doctor
    diagnosis: Diagnosis
    options: CheckOptions


@dataclass(slots=True, frozen=True)
class CheckDefinition:
    """Name + coroutine function for a built-in check."""

    name: str
    run: Callable[[CheckContext], Awaitable[DiagnosticStatus]]


@dataclass(slots=True, frozen=True)
class CommandRunResult:
    """What happened to the debug command."""

    command: str
    exit_code: int | None
    stdout_path: Path | None
    debug_path: Path | None
    error: str | None = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command ran to completion."""
        return self.error is None and not self.timed_out
