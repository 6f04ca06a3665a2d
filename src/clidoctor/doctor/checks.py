"""Built-in check registry for the doctor command.

Every check is a coroutine receiving a :class:`CheckContext` and returning a
:class:`DiagnosticStatus`. Checks may add any number of suggestions through
``context.doctor``; the runner publishes the returned status. To add a check,
write the coroutine and list it in :func:`collect_checks`.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence

import httpx
from packaging.version import InvalidVersion, Version

from .errors import VersionLookupError
from .models import (
    NO_PROXY_ENV_VARS,
    PROXY_ENV_VARS,
    CheckContext,
    CheckDefinition,
    CheckOptions,
    DiagnosticStatus,
)

LOGGER = logging.getLogger(__name__)

CLI_VERSION_CHECK = "using latest CLI version"
DEPRECATED_PLUGINS_CHECK = "deprecated plugins not installed"
LINKED_PLUGINS_CHECK = "no linked plugins"
PROXY_CONSISTENCY_CHECK = "proxy environment variables consistent"
NO_PROXY_CHECK = "no proxy environment variable set"
ENDPOINT_CHECK_PREFIX = "can access: "


def collect_checks(options: CheckOptions) -> Sequence[CheckDefinition]:
    """Return the checks that should run for *options*."""
    checks: list[CheckDefinition] = [
        _make_check(CLI_VERSION_CHECK, _check_cli_version),
        _make_check(DEPRECATED_PLUGINS_CHECK, _check_deprecated_plugins),
        _make_check(LINKED_PLUGINS_CHECK, _check_linked_plugins),
        _make_check(PROXY_CONSISTENCY_CHECK, _check_proxy_consistency),
        _make_check(NO_PROXY_CHECK, _check_no_proxy),
    ]
    checks.extend(_endpoint_checks(options.endpoints))
    return tuple(checks)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_check(
    name: str,
    handler: Callable[[CheckContext], Awaitable[DiagnosticStatus]],
) -> CheckDefinition:
    return CheckDefinition(name=name, run=handler)


def _http_client(options: CheckOptions) -> httpx.AsyncClient:
    if options.http_client_factory is not None:
        return options.http_client_factory()
    return httpx.AsyncClient(timeout=options.network_timeout, follow_redirects=True)


def _describe_error(exc: BaseException) -> str:
    detail = str(exc).strip()
    return f"{exc.__class__.__name__}: {detail}" if detail else exc.__class__.__name__


async def fetch_latest_version(options: CheckOptions, package: str) -> str:
    """Return the latest version of *package* published on the package index."""
    url = options.version_url.format(package=package)
    try:
        async with _http_client(options) as client:
            response = await client.get(url, timeout=options.network_timeout)
            response.raise_for_status()
            payload = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        raise VersionLookupError(
            f"version lookup at {url} failed ({_describe_error(exc)})"
        ) from exc
    info = payload.get("info") if isinstance(payload, dict) else None
    version = info.get("version") if isinstance(info, dict) else None
    if not isinstance(version, str) or not version.strip():
        raise VersionLookupError(f"version lookup at {url} returned no version")
    return version.strip()


# ---------------------------------------------------------------------------
# Version
# ---------------------------------------------------------------------------


async def _check_cli_version(context: CheckContext) -> DiagnosticStatus:
    options = context.options
    current = context.diagnosis.environment_facts.tool_version
    package = options.package_name
    try:
        if options.version_lookup is not None:
            latest = await options.version_lookup(package)
        else:
            latest = await fetch_latest_version(options, package)
    except Exception as exc:
        LOGGER.debug("Latest version lookup for %s failed", package, exc_info=exc)
        context.doctor.add_suggestion(
            f"Unable to determine the latest published version of {package} "
            f"({_describe_error(exc)}); check your network connection and proxy settings."
        )
        return DiagnosticStatus.UNKNOWN

    try:
        outdated = Version(current) < Version(latest)
    except InvalidVersion as exc:
        context.doctor.add_suggestion(
            f"Unable to compare the installed {package} version {current!r} with the "
            f"latest published version {latest!r} ({exc})."
        )
        return DiagnosticStatus.UNKNOWN

    if outdated:
        context.doctor.add_suggestion(
            f"Update your CLI from version {current} to the latest version {latest} "
            f"by running `pip install --upgrade {package}`."
        )
        return DiagnosticStatus.FAIL
    return DiagnosticStatus.PASS


# ---------------------------------------------------------------------------
# Plugins
# ---------------------------------------------------------------------------


async def _check_deprecated_plugins(context: CheckContext) -> DiagnosticStatus:
    deprecated = set(context.options.deprecated_plugins)
    plugins = context.diagnosis.environment_facts.plugins
    found = [name for name in plugins if name in deprecated]
    for name in found:
        context.doctor.add_suggestion(
            f"The {name} plugin is deprecated and conflicts with current "
            f"{context.options.bin} commands; uninstall it by running `pip uninstall {name}`."
        )
    return DiagnosticStatus.FAIL if found else DiagnosticStatus.PASS


async def _check_linked_plugins(context: CheckContext) -> DiagnosticStatus:
    plugins = context.diagnosis.environment_facts.plugins
    linked = [plugin for plugin in plugins.values() if plugin.is_linked]
    for plugin in linked:
        location = f" from {plugin.root}" if plugin.root else ""
        context.doctor.add_suggestion(
            f"Warning: the {plugin.name} plugin is linked (installed in development "
            f"mode{location}). Linked plugins may behave differently from released "
            f"versions; reinstall it with `pip install {plugin.name}` when you're done."
        )
    return DiagnosticStatus.FAIL if linked else DiagnosticStatus.PASS


# ---------------------------------------------------------------------------
# Proxy environment
# ---------------------------------------------------------------------------


async def _check_proxy_consistency(context: CheckContext) -> DiagnosticStatus:
    raw = context.doctor.proxy_values
    shown = dict(context.diagnosis.proxy_env_vars)
    status = DiagnosticStatus.PASS
    for upper, lower in PROXY_ENV_VARS:
        if upper in raw and lower in raw and raw[upper] != raw[lower]:
            status = DiagnosticStatus.FAIL
            context.doctor.add_suggestion(
                f"Found conflicting values for {upper} ({shown[upper]}) and {lower} "
                f"({shown[lower]}); tools pick different spellings, so set both to the "
                "same value or unset one of them."
            )
    return status


async def _check_no_proxy(context: CheckContext) -> DiagnosticStatus:
    values = dict(context.diagnosis.proxy_env_vars)
    present = [name for name in NO_PROXY_ENV_VARS if name in values]
    if not present:
        return DiagnosticStatus.PASS
    for name in present:
        context.doctor.add_suggestion(
            f"Found {name}={values[name]}; requests to the listed hosts bypass your "
            "proxy. Make sure this is intended if network checks fail."
        )
    return DiagnosticStatus.WARN


# ---------------------------------------------------------------------------
# Network reachability
# ---------------------------------------------------------------------------


def _endpoint_checks(endpoints: Sequence[str]) -> Sequence[CheckDefinition]:
    return tuple(
        _make_check(f"{ENDPOINT_CHECK_PREFIX}{url}", _probe_endpoint(url))
        for url in dict.fromkeys(endpoints)
    )


def _probe_endpoint(url: str) -> Callable[[CheckContext], Awaitable[DiagnosticStatus]]:
    async def _run(context: CheckContext) -> DiagnosticStatus:
        options = context.options
        try:
            async with _http_client(options) as client:
                response = await client.get(url, timeout=options.network_timeout)
        except httpx.HTTPError as exc:
            context.doctor.add_suggestion(
                f"Cannot reach {url} ({_describe_error(exc)}); check your network "
                "connection, firewall and proxy settings."
            )
            return DiagnosticStatus.FAIL
        if response.status_code >= 500:
            context.doctor.add_suggestion(
                f"{url} responded with HTTP {response.status_code}; the service may be "
                "degraded, try again later."
            )
            return DiagnosticStatus.FAIL
        return DiagnosticStatus.PASS

    return _run


__all__ = [
    "CLI_VERSION_CHECK",
    "DEPRECATED_PLUGINS_CHECK",
    "ENDPOINT_CHECK_PREFIX",
    "LINKED_PLUGINS_CHECK",
    "NO_PROXY_CHECK",
    "PROXY_CONSISTENCY_CHECK",
    "VersionLookupError",
    "collect_checks",
    "fetch_latest_version",
]
