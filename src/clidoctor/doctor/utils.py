"""Utility helpers for serialising doctor diagnoses."""
from __future__ import annotations

import json
from collections.abc import Mapping, Sequence

from .models import Diagnosis


def _sanitize_payload(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize_payload(item) for item in value]
    return str(value)


def _pairs_payload(pairs: Sequence[tuple[str, str]]) -> list[str]:
    return [f"{name}={value}" for name, value in pairs]


def serialize_diagnosis(diagnosis: Diagnosis) -> dict[str, object]:
    """Convert a diagnosis into the JSON mapping persisted as ``diagnosis.json``."""
    return {
        "runId": diagnosis.run_id,
        "versionDetail": _sanitize_payload(diagnosis.environment_facts.to_dict()),
        "envVarGroups": {
            group: _pairs_payload(pairs) for group, pairs in diagnosis.env_var_groups.items()
        },
        "proxyEnvVars": _pairs_payload(diagnosis.proxy_env_vars),
        "cliConfig": _sanitize_payload(diagnosis.cli_config),
        "pluginSpecificData": _sanitize_payload(diagnosis.plugin_specific_data),
        "diagnosticResults": [result.to_dict() for result in diagnosis.diagnostic_results],
        "suggestions": list(diagnosis.suggestions),
        "commandName": diagnosis.command_name,
        "commandExitCode": diagnosis.command_exit_code,
        "logFilePaths": list(diagnosis.log_file_paths),
    }


def dump_diagnosis(diagnosis: Diagnosis) -> str:
    """Return the pretty-printed JSON document for *diagnosis*."""
    return json.dumps(serialize_diagnosis(diagnosis), indent=2)
