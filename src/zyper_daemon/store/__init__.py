"""Persisted node document and instance records."""

from .node import configure_node
from .records import InstanceStore

__all__ = ["InstanceStore", "configure_node"]
