"""Process supervision for game server instances."""

from .console_buffer import ConsoleBuffer, OutputRecord
from .models import ExitStatus, InstanceState, LaunchSpec, RunningProcess
from .process_manager import ProcessSupervisor
from .pty_process import PtyLauncher, PtyProcess
from .resource_manager import ResourceManager

__all__ = [
    "ConsoleBuffer",
    "OutputRecord",
    "ExitStatus",
    "InstanceState",
    "LaunchSpec",
    "RunningProcess",
    "ProcessSupervisor",
    "PtyLauncher",
    "PtyProcess",
    "ResourceManager",
]
