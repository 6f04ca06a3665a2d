"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    Individual check failures never change the exit code; only problems that
    prevent a diagnosis from being produced do.
    """

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
