"""Doctor command infrastructure."""

from __future__ import annotations

from .checks import VersionLookupError, collect_checks, fetch_latest_version
from .command import DebugCommandExecutor, normalize_command
from .engine import DiagnosticRunner, wait_for_tasks
from .errors import (
    AlreadyInitializedError,
    DoctorError,
    DoctorStateError,
    NotInitializedError,
    UnknownExtensionError,
)
from .extensions import ExtensionHost, hook_name
from .models import (
    CheckContext,
    CheckDefinition,
    CheckOptions,
    CommandRunResult,
    DiagnosticResult,
    DiagnosticStatus,
    Diagnosis,
    EnvironmentFacts,
    PluginInfo,
    PluginKind,
)
from .state import Doctor, get_doctor, init_doctor, is_doctor_initialized, reset_doctor
from .utils import dump_diagnosis, serialize_diagnosis

__all__ = [
    "AlreadyInitializedError",
    "CheckContext",
    "CheckDefinition",
    "CheckOptions",
    "CommandRunResult",
    "DebugCommandExecutor",
    "DiagnosticResult",
    "DiagnosticRunner",
    "DiagnosticStatus",
    "Diagnosis",
    "Doctor",
    "DoctorError",
    "DoctorStateError",
    "EnvironmentFacts",
    "ExtensionHost",
    "NotInitializedError",
    "PluginInfo",
    "PluginKind",
    "UnknownExtensionError",
    "VersionLookupError",
    "collect_checks",
    "dump_diagnosis",
    "fetch_latest_version",
    "get_doctor",
    "hook_name",
    "init_doctor",
    "is_doctor_initialized",
    "normalize_command",
    "reset_doctor",
    "serialize_diagnosis",
    "wait_for_tasks",
]
