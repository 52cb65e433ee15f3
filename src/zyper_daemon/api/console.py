"""Live console WebSocket."""

import json
import uuid
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from zyper_daemon.hub import ConsoleHub

from .deps import expected_node_key, key_matches

router = APIRouter()
logger = structlog.get_logger()

JOIN = "join-server"
COMMAND = "console-command"
DETACH = "detach"


class WebSocketSubscriber:
    """Hub subscriber backed by one WebSocket connection."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self.label = f"ws-{uuid.uuid4().hex[:8]}"

    async def send(self, event: Dict[str, Any]) -> None:
        await self.websocket.send_json(event)


def _error(message: str) -> Dict[str, Any]:
    return {"event": "error", "data": {"message": message}}


async def dispatch(hub: ConsoleHub, subscriber: WebSocketSubscriber, frame: Any) -> None:
    """Apply one client frame to the hub."""
    if not isinstance(frame, dict):
        hub.notify(subscriber, _error("Frames must be JSON objects"))
        return

    event = frame.get("event")
    data = frame.get("data")

    if event == JOIN and isinstance(data, str):
        hub.subscribe(subscriber, data)
    elif event == DETACH and isinstance(data, str):
        hub.unsubscribe(subscriber, data)
        logger.info("Console subscriber left", instance_id=data, subscriber=subscriber.label)
    elif event == COMMAND and isinstance(data, dict):
        server_id = data.get("serverId")
        command = data.get("command")
        if not isinstance(server_id, str) or not isinstance(command, str):
            hub.notify(subscriber, _error("console-command needs serverId and command"))
            return
        await hub.handle_command(subscriber, server_id, command)
    else:
        hub.notify(subscriber, _error(f"Unsupported frame: {event}"))


@router.websocket("/ws")
async def console_socket(websocket: WebSocket, token: Optional[str] = None) -> None:
    expected = expected_node_key(websocket)
    if expected and not key_matches(token, expected):
        logger.warning("Rejected console connection", reason="bad token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    hub: ConsoleHub = websocket.app.state.hub
    subscriber = WebSocketSubscriber(websocket)
    logger.info("Console client connected", subscriber=subscriber.label)

    try:
        while True:
            text = await websocket.receive_text()
            try:
                frame = json.loads(text)
            except ValueError:
                hub.notify(subscriber, _error("Invalid JSON"))
                continue
            await dispatch(hub, subscriber, frame)
    except WebSocketDisconnect:
        pass
    finally:
        hub.unsubscribe_all(subscriber)
        logger.info("Console client disconnected", subscriber=subscriber.label)
