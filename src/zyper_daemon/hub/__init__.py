"""Console fan-out hub."""

from . import events
from .console_hub import ConsoleHub

__all__ = ["ConsoleHub", "events"]
