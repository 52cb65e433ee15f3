"""Zyper Daemon - node agent for game server instances."""

__version__ = "2.0.0"
__author__ = "Zyper Core Team"

from zyper_daemon.core.config import Settings
from zyper_daemon.core.models import InstanceConfig, ServerKind

__all__ = ["Settings", "InstanceConfig", "ServerKind", "__version__"]
