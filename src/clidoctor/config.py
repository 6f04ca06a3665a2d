"""Configuration loader for clidoctor.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``~/.config/clidoctor/config.yml`` (or an override path).
3. Environment variables prefixed with ``CLIDOCTOR_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CLIDOCTOR_NETWORK__TIMEOUT=2.5
    export CLIDOCTOR_COMMAND__TIMEOUT=120

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally. The resulting configuration is exposed as
immutable ``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover
    raise RuntimeError(
        "PyYAML is required to load clidoctor configuration. Install with "
        "`pip install clidoctor` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "CLIDOCTOR_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class NetworkConfig:
    """Network settings shared by the version and reachability checks."""

    timeout: float = 5.0
    version_url: str = "https://pypi.org/pypi/{package}/json"
    endpoints: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "version_url": self.version_url,
            "endpoints": list(self.endpoints),
        }


@dataclass(frozen=True)
class CommandConfig:
    """Settings for the debug command executor."""

    timeout: float | None = None
    env: tuple[tuple[str, str], ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout, "env": dict(self.env)}


@dataclass(frozen=True)
class EventsConfig:
    """Event bus tunables."""

    subscriber_timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"subscriber_timeout": self.subscriber_timeout}


@dataclass(frozen=True)
class IssuesConfig:
    """Where ``doctor --create-issue`` files its report."""

    repo: str = "clidoctor/clidoctor"
    template_url: str | None = None
    labels: tuple[str, ...] = ("doctor", "investigating")

    @property
    def new_issue_url(self) -> str:
        """Return the GitHub "new issue" endpoint for the configured repo."""
        return f"https://github.com/{self.repo}/issues/new"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "repo": self.repo,
            "template_url": self.template_url,
            "labels": list(self.labels),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for clidoctor."""

    config_file: Path
    bin: str
    package_name: str
    hook_prefix: str
    debug_flag: str
    output_dir: Path | None
    logs_dir: Path
    env_var_groups: tuple[tuple[str, str], ...]
    pinned_suggestions: tuple[str, ...]
    deprecated_plugins: tuple[str, ...]
    core_plugins: tuple[str, ...]
    network: NetworkConfig
    command: CommandConfig
    events: EventsConfig
    issues: IssuesConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "bin": self.bin,
            "package_name": self.package_name,
            "hook_prefix": self.hook_prefix,
            "debug_flag": self.debug_flag,
            "output_dir": str(self.output_dir) if self.output_dir else None,
            "logs_dir": str(self.logs_dir),
            "env_var_groups": dict(self.env_var_groups),
            "pinned_suggestions": list(self.pinned_suggestions),
            "deprecated_plugins": list(self.deprecated_plugins),
            "core_plugins": list(self.core_plugins),
            "network": self.network.to_dict(),
            "command": self.command.to_dict(),
            "events": self.events.to_dict(),
            "issues": self.issues.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/clidoctor/config.yml",
    "bin": "clidoctor",
    "package_name": "clidoctor",
    "hook_prefix": "clidoctor",
    "debug_flag": "--dev-debug",
    "output_dir": None,  # current working directory at run time
    "logs_dir": "~/.local/state/clidoctor/logs",
    "env_var_groups": {
        "clidoctor": ENV_PREFIX,
        "python": "PYTHON",
    },
    "pinned_suggestions": [
        "check https://github.com/clidoctor/clidoctor/issues for community posted CLI issues",
        "check https://status.python.org for any announced problems with the package index",
    ],
    "deprecated_plugins": ["clidoctor-legacy"],
    "core_plugins": [],
    "network": {
        "timeout": 5.0,
        "version_url": "https://pypi.org/pypi/{package}/json",
        "endpoints": [
            "https://pypi.org/simple/",
            "https://files.pythonhosted.org/",
            "https://github.com/",
        ],
    },
    "command": {
        "timeout": None,
        "env": {"NO_COLOR": "1", "FORCE_COLOR": "0"},
    },
    "events": {
        "subscriber_timeout": 10.0,
    },
    "issues": {
        "repo": "clidoctor/clidoctor",
        "template_url": None,
        "labels": ["doctor", "investigating"],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "network": {"timeout", "version_url", "endpoints"},
    "command": {"timeout", "env"},
    "events": {"subscriber_timeout"},
    "issues": {"repo", "template_url", "labels"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        section_map = _as_dict(value, section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    groups = _as_dict(raw.get("env_var_groups"), "env_var_groups")
    for name, prefix in groups.items():
        if not isinstance(prefix, str) or not prefix.strip():
            raise ConfigError(
                f"env_var_groups.{name} must be a non-empty environment variable prefix."
            )

    for key in ("bin", "package_name", "hook_prefix", "debug_flag"):
        value = raw.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"{key} must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    output_value = raw.get("output_dir")
    output_dir = _to_path(output_value) if output_value not in (None, "") else None

    network_mapping = _as_dict(raw.get("network"), "network")
    network = NetworkConfig(
        timeout=_expect_positive_float(
            network_mapping.get("timeout"), "network.timeout", default=5.0
        ),
        version_url=str(
            network_mapping.get("version_url", "https://pypi.org/pypi/{package}/json")
        ),
        endpoints=_string_tuple(network_mapping.get("endpoints"), "network.endpoints"),
    )

    command_mapping = _as_dict(raw.get("command"), "command")
    command_timeout_raw = command_mapping.get("timeout")
    command_timeout = (
        _expect_positive_float(command_timeout_raw, "command.timeout", default=0.0)
        if command_timeout_raw is not None
        else None
    )
    command_env = _as_dict(command_mapping.get("env"), "command.env")
    command = CommandConfig(
        timeout=command_timeout,
        env=tuple((key, str(value)) for key, value in command_env.items()),
    )

    events_mapping = _as_dict(raw.get("events"), "events")
    events = EventsConfig(
        subscriber_timeout=_expect_positive_float(
            events_mapping.get("subscriber_timeout"),
            "events.subscriber_timeout",
            default=10.0,
        ),
    )

    issues_mapping = _as_dict(raw.get("issues"), "issues")
    template_url = issues_mapping.get("template_url")
    issues = IssuesConfig(
        repo=str(issues_mapping.get("repo", "clidoctor/clidoctor")).strip("/"),
        template_url=str(template_url) if template_url else None,
        labels=_string_tuple(issues_mapping.get("labels"), "issues.labels"),
    )

    groups = _as_dict(raw.get("env_var_groups"), "env_var_groups")

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        bin=str(raw["bin"]).strip(),
        package_name=str(raw["package_name"]).strip(),
        hook_prefix=str(raw["hook_prefix"]).strip(),
        debug_flag=str(raw["debug_flag"]).strip(),
        output_dir=output_dir,
        logs_dir=_to_path(raw.get("logs_dir")),
        env_var_groups=tuple((name, str(prefix)) for name, prefix in groups.items()),
        pinned_suggestions=_string_tuple(
            raw.get("pinned_suggestions"), "pinned_suggestions"
        ),
        deprecated_plugins=_string_tuple(
            raw.get("deprecated_plugins"), "deprecated_plugins"
        ),
        core_plugins=_string_tuple(raw.get("core_plugins"), "core_plugins"),
        network=network,
        command=command,
        events=events,
        issues=issues,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        if path_segments[0] not in ALLOWED_TOP_LEVEL_KEYS:
            # CLIDOCTOR_* variables double as diagnosis data; only known keys configure us.
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _string_tuple(value: object, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        # Allow comma-separated lists from environment variables.
        return tuple(part.strip() for part in value.split(",") if part.strip())
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a list. Got {type(value).__name__}.")
    items: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str):
            raise ConfigError(f"{label}[{index}] must be a string. Got {item!r}.")
        items.append(item)
    return tuple(items)


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "CommandConfig",
    "ConfigError",
    "EventsConfig",
    "IssuesConfig",
    "NetworkConfig",
    "load_config",
]
