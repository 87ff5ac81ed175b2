"""Lumen: an actor-based runtime for terminal applications."""

from lumen.runtime.command import Command
from lumen.runtime.events import Event, EventType, KeyModifiers
from lumen.runtime.lifecycle import Lifecycle, run, run_application, start_application

__version__ = "0.1.0"

__all__ = [
    "Command",
    "Event",
    "EventType",
    "KeyModifiers",
    "Lifecycle",
    "run",
    "run_application",
    "start_application",
    "__version__",
]
