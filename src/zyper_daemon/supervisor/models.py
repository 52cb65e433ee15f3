"""Data models for the process supervisor."""

import asyncio
import signal as signal_module
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from zyper_daemon.core.exceptions import CrashExit

from .console_buffer import ConsoleBuffer


class InstanceState(Enum):
    """Runtime state of an instance."""
    STOPPED = "stopped"
    RUNNING = "running"


@dataclass(frozen=True)
class ExitStatus:
    """How a process ended.

    ``exit_code`` is None when the process was killed by a signal.
    """

    exit_code: Optional[int]
    signal: Optional[str] = None
    stop_requested: bool = False

    @classmethod
    def from_returncode(cls, returncode: int, stop_requested: bool = False) -> "ExitStatus":
        if returncode < 0:
            try:
                name = signal_module.Signals(-returncode).name
            except ValueError:
                name = f"SIG{-returncode}"
            return cls(exit_code=None, signal=name, stop_requested=stop_requested)
        return cls(exit_code=returncode, stop_requested=stop_requested)

    @property
    def crashed(self) -> bool:
        """Terminated unexpectedly: not asked to stop, and not a clean exit."""
        if self.stop_requested:
            return False
        return self.signal is not None or self.exit_code != 0

    def as_error(self) -> Optional[CrashExit]:
        if not self.crashed:
            return None
        if self.signal:
            message = f"Server process killed by {self.signal}"
        else:
            message = f"Server process exited with code {self.exit_code}"
        return CrashExit(message, exit_code=self.exit_code, signal=self.signal)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "exitCode": self.exit_code,
            "signal": self.signal,
            "crashed": self.crashed,
        }
        error = self.as_error()
        if error is not None:
            data["error"] = error.to_dict()
        return data


class ConsoleHandle(Protocol):
    """Live handle on a launched process."""

    pid: int

    def write(self, data: bytes) -> None: ...

    def send_signal(self, sig: int) -> None: ...

    async def wait(self) -> ExitStatus: ...


@dataclass
class LaunchSpec:
    """Everything needed to create the interactive process."""

    instance_id: str
    argv: List[str]
    cwd: str
    env: Dict[str, str]
    cols: int = 80
    rows: int = 30


@dataclass
class RunningProcess:
    """A started instance. Exists only between start and exit."""

    instance_id: str
    pid: int
    started_at: float
    handle: ConsoleHandle
    output: ConsoleBuffer
    stop_requested: bool = False
    # psutil.Process per pid, kept for CPU sampling
    probes: Dict[int, Any] = field(default_factory=dict)

    @property
    def uptime(self) -> float:
        return max(0.0, time.time() - self.started_at)

    @property
    def started_at_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.started_at, tz=timezone.utc)


@dataclass
class InstanceSlot:
    """Per-instance supervisor state, guarded by ``lock``."""

    instance_id: str
    state: InstanceState = InstanceState.STOPPED
    process: Optional[RunningProcess] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    restart_token: Optional[object] = None
    last_exit: Optional[ExitStatus] = None

    @property
    def is_running(self) -> bool:
        return self.state == InstanceState.RUNNING

    @property
    def restart_pending(self) -> bool:
        return self.restart_token is not None
