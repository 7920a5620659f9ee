"""Exception types raised by srbmux."""

from __future__ import annotations


class SrbmuxError(Exception):
    """Base class for srbmux errors."""


class ConfigError(SrbmuxError):
    """Persisted settings exist but cannot be used."""


class LaunchFailure(SrbmuxError):
    """The OS could not create the language server process."""


class EscapingFailure(LaunchFailure):
    """A command token cannot be safely quoted for a login shell."""
