"""Build pre-filled GitHub issues from a diagnosis."""
from __future__ import annotations

import logging
import re
from urllib.parse import quote, urlencode

import httpx

from .config import AppConfig
from .doctor.models import Diagnosis, DiagnosticStatus

LOGGER = logging.getLogger(__name__)

_FRONT_MATTER = re.compile(r"\A---\n.*?\n---\n\n?", re.DOTALL)
_ENVIRONMENT_SECTION = re.compile(r"\n- Which shell/terminal.*?- Paste the output here", re.DOTALL)


def fetch_issue_template(url: str, *, timeout: float = 5.0) -> str:
    """Download the issue template body; returns ``""`` when unavailable."""
    try:
        response = httpx.get(url, timeout=timeout, follow_redirects=True)
    except httpx.HTTPError as exc:
        LOGGER.warning("Unable to download issue template from %s: %s", url, exc)
        return ""
    if response.status_code >= 400:
        LOGGER.warning("Issue template %s returned HTTP %s", url, response.status_code)
        return ""
    return response.text


def _fenced(lines: list[str]) -> str:
    return "\n".join(["```", *lines, "```"])


def generate_issue_markdown(template: str, diagnosis: Diagnosis) -> str:
    """Merge the environment details and check results into *template*."""
    facts = diagnosis.environment_facts
    cli_config = diagnosis.cli_config
    user_agent = str(cli_config.get("userAgent", facts.user_agent))

    blocks = [_fenced([user_agent, *facts.plugin_versions()])]
    for group, pairs in diagnosis.env_var_groups.items():
        if pairs:
            blocks.append(
                _fenced([f"{group.upper()} ENV. VARS.", *(f"{k}={v}" for k, v in pairs)])
            )
    blocks.append(
        _fenced(
            [
                f"Windows: {str(cli_config.get('windows', False)).lower()}",
                f"Shell: {cli_config.get('shell', facts.shell)}",
                user_agent,
            ]
        )
    )
    results = [
        f"{':white_check_mark:' if result.status is DiagnosticStatus.PASS else ':x:'} "
        f"{result.status.value} - {result.name}"
        for result in diagnosis.diagnostic_results
    ]
    info = "\n" + "\n\n".join(blocks) + "\n---\n### Diagnostics\n" + "\n".join(results) + "\n"

    body = _FRONT_MATTER.sub("", template)
    if _ENVIRONMENT_SECTION.search(body):
        return _ENVIRONMENT_SECTION.sub(lambda _match: info, body, count=1)
    return f"{body.rstrip()}\n{info}" if body.strip() else info.lstrip("\n")


def build_issue_url(config: AppConfig, title: str, body: str) -> str:
    """Return the GitHub "new issue" URL with title, body and labels filled in."""
    labels = ",".join([*config.issues.labels, config.bin])
    query = urlencode({"title": title, "body": body, "labels": labels}, quote_via=quote, safe=",")
    return f"{config.issues.new_issue_url}?{query}"


__all__ = ["build_issue_url", "fetch_issue_template", "generate_issue_markdown"]
