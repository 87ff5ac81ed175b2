"""Custom exceptions used across the Lumen runtime."""
from __future__ import annotations

from typing import Any


class LumenError(Exception):
    """Base exception for all runtime-specific errors."""


class ConfigurationError(LumenError):
    """Raised when configuration loading or validation fails."""


class StartupError(LumenError):
    """Raised when an application cannot be started.

    ``stage`` names the startup step that failed so callers can report which
    component refused to come up.
    """

    def __init__(self, stage: str, reason: Any) -> None:
        super().__init__(f"{stage}: {reason}")
        self.stage = stage
        self.reason = reason


class PluginError(LumenError):
    """Raised for plugin loading or execution issues."""


class BackendError(LumenError):
    """Raised when the terminal backend fails to initialise or run."""


class PreferencesError(LumenError):
    """Raised when the preferences store cannot be read or written."""


class CommandError(LumenError):
    """Raised when a command cannot be executed."""


class ActorError(LumenError):
    """Base class for mailbox failures."""


class ActorNotRunning(ActorError):
    """Raised when calling an actor that has already terminated."""


class CallTimeout(ActorError):
    """Raised when a synchronous call does not receive a reply in time."""


__all__ = [
    "LumenError",
    "ConfigurationError",
    "StartupError",
    "PluginError",
    "BackendError",
    "PreferencesError",
    "CommandError",
    "ActorError",
    "ActorNotRunning",
    "CallTimeout",
]
