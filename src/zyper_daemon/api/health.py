"""Health and node statistics endpoints."""

import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from zyper_daemon import __version__
from zyper_daemon.supervisor import ResourceManager

from .deps import require_node_key

router = APIRouter()

START_TIME = time.time()


@router.get("/health")
async def health_check(request: Request) -> Dict[str, Any]:
    """Unauthenticated liveness probe."""
    store = request.app.state.store
    return {
        "status": "ok",
        "version": __version__,
        "nodeId": store.get_meta("nodeId"),
        "nodeName": store.get_meta("nodeName"),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": time.time() - START_TIME,
    }


@router.get("/stats", dependencies=[Depends(require_node_key)])
async def node_stats(request: Request) -> Dict[str, Any]:
    state = request.app.state
    total = len(state.store.ids())
    running = len(state.supervisor.running_ids)
    return {
        "system": ResourceManager.get_system_stats(active_servers=running),
        "servers": {
            "total": total,
            "running": running,
            "stopped": total - running,
        },
        "node": {
            "id": state.store.get_meta("nodeId"),
            "name": state.store.get_meta("nodeName"),
            "location": state.store.get_meta("location"),
            "host": state.settings.host,
            "port": state.settings.port or state.store.get_meta("port") or 8080,
        },
    }
