"""Exception hierarchy for the doctor."""

from __future__ import annotations


class DoctorError(RuntimeError):
    """Base class for doctor lifecycle and orchestration errors."""


class NotInitializedError(DoctorError):
    """Raised when the doctor is used before :func:`init_doctor`."""


class AlreadyInitializedError(DoctorError):
    """Raised when :func:`init_doctor` is called twice without a reset."""


class DoctorStateError(DoctorError):
    """Raised when a set-once diagnosis field is written twice."""


class UnknownExtensionError(DoctorError):
    """Raised when ``--plugin`` names an extension that is not installed."""

    def __init__(self, name: str, available: tuple[str, ...] = ()) -> None:
        """Remember the requested name and what was installed instead."""
        self.name = name
        self.available = available
        message = f"Unknown plugin '{name}'."
        if available:
            message += f" Installed plugins: {', '.join(available)}."
        super().__init__(message)


class VersionLookupError(DoctorError):
    """Raised when the latest published version cannot be determined."""


__all__ = [
    "AlreadyInitializedError",
    "DoctorError",
    "DoctorStateError",
    "NotInitializedError",
    "UnknownExtensionError",
    "VersionLookupError",
]
