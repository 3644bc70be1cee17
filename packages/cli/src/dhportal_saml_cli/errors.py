"""Error types raised by the CLI."""

from __future__ import annotations


class CLIError(RuntimeError):
    """Base error for CLI failures reported to the user."""


class CLIConfigurationError(CLIError):
    """Raised when CLI options, profiles or environment are invalid."""


__all__ = ["CLIConfigurationError", "CLIError"]
