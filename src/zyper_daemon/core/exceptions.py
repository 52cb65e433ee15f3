"""Custom exceptions for the Zyper daemon."""

from typing import Optional


class DaemonError(Exception):
    """Base exception for all daemon errors.

    ``kind`` is the machine-readable name surfaced to API clients.
    """

    kind = "DaemonError"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": str(self), "code": self.code}


class InstanceNotFoundError(DaemonError):
    """Instance is not configured."""

    kind = "NotFound"
    status_code = 404


class AlreadyRunningError(DaemonError):
    """Instance already has a running process (or a restart is pending)."""

    kind = "AlreadyRunning"
    status_code = 409


class NotRunningError(DaemonError):
    """Instance has no running process."""

    kind = "NotRunning"
    status_code = 409


class LaunchError(DaemonError):
    """Process could not be created."""

    kind = "LaunchError"
    status_code = 500


class CrashExit(DaemonError):
    """Process terminated unexpectedly."""

    kind = "CrashExit"
    status_code = 500

    def __init__(self, message: str, exit_code: Optional[int] = None, signal: Optional[str] = None):
        super().__init__(message, code="crash")
        self.exit_code = exit_code
        self.signal = signal

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({"exitCode": self.exit_code, "signal": self.signal})
        return data


class AccessDeniedError(DaemonError):
    """Path escapes the instance directory."""

    kind = "AccessDenied"
    status_code = 403


class FileOperationError(DaemonError):
    """File operation rejected (not found, too large, not empty...)."""

    kind = "FileError"
    status_code = 400


class PathNotFoundError(FileOperationError):
    """File or directory does not exist."""

    kind = "PathNotFound"
    status_code = 404


class VersionLookupError(DaemonError):
    """Upstream version API did not answer usefully."""

    kind = "VersionLookupError"
    status_code = 502
