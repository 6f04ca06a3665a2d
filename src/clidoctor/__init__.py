"""clidoctor package bootstrap.

Exposes the package version for the CLI, the user agent string recorded in
every diagnosis and the packaging metadata.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: Keep in sync with the version in ``pyproject.toml``.
__version__ = "0.3.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
