"""Event frames delivered to console subscribers."""

import time
from typing import Any, Dict, Optional

CONSOLE_OUTPUT = "console-output"
SERVER_STARTED = "server_started"
SERVER_STOPPED = "server_stopped"

# console-output message types
LOG = "log"
SYSTEM = "system"
COMMAND = "command"
ERROR = "error"

CONNECTED_MESSAGE = "✅ Connected to server console (Real-time)\n"
NOT_RUNNING_MESSAGE = "⚠️ Server is not running. Start it to see live logs.\n"
COMMAND_FAILED_MESSAGE = "❌ Server is not running. Start it first.\n"


def now_ms() -> int:
    return int(time.time() * 1000)


def console_output(
    message: str,
    type: str = LOG,
    timestamp: Optional[int] = None,
    source: Optional[str] = None,
    server_id: Optional[str] = None,
) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "message": message,
        "type": type,
        "timestamp": now_ms() if timestamp is None else timestamp,
    }
    if server_id is not None:
        data["serverId"] = server_id
    if source is not None:
        data["source"] = source
    return {"event": CONSOLE_OUTPUT, "data": data}


def server_started(pid: int, server_id: str) -> Dict[str, Any]:
    return {"event": SERVER_STARTED, "data": {"serverId": server_id, "pid": pid, "timestamp": now_ms()}}


def server_stopped(exit_info: Dict[str, Any], server_id: str) -> Dict[str, Any]:
    return {"event": SERVER_STOPPED, "data": {"serverId": server_id, **exit_info}}
