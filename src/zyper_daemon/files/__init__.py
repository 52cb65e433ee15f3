"""Sandboxed file operations for instance directories."""

from .sandbox import InstanceFiles

__all__ = ["InstanceFiles"]
