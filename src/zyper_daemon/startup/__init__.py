"""Startup policy: Java runtime selection, launch scripts and version lists."""

from .script import (
    JAVA_VERSION_MATRIX,
    generate_startup_script,
    required_java_version,
    write_server_files,
    write_startup_script,
)
from .versions import VersionCatalog

__all__ = [
    "JAVA_VERSION_MATRIX",
    "generate_startup_script",
    "required_java_version",
    "write_server_files",
    "write_startup_script",
    "VersionCatalog",
]
