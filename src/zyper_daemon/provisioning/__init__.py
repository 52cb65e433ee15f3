"""Instance provisioning."""

from .manager import InstanceManager

__all__ = ["InstanceManager"]
