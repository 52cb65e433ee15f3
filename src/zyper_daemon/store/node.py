"""Node identity and panel registration."""

import secrets
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from .records import InstanceStore

logger = structlog.get_logger()

DEFAULT_LOCATION = "CodeSandbox"
DEFAULT_PORT = 8080


def configure_node(
    store: InstanceStore,
    panel_url: str,
    panel_key: str,
    name: Optional[str] = None,
    location: Optional[str] = None,
    port: int = DEFAULT_PORT,
) -> Dict[str, Any]:
    """Register the node with a panel.

    ``nodeId`` and ``nodeKey`` are generated once and kept on
    reconfiguration; everything else is overwritten.
    """
    if not panel_url or not panel_key:
        raise ValueError("panel_url and panel_key are required")

    fields: Dict[str, Any] = {
        "panelUrl": panel_url,
        "panelKey": panel_key,
        "nodeName": name or store.get_meta("nodeName") or f"node-{int(time.time() * 1000)}",
        "location": location or store.get_meta("location") or DEFAULT_LOCATION,
        "port": port,
        "configured": True,
        "configuredAt": datetime.now(timezone.utc).isoformat(),
    }
    if not store.get_meta("nodeId"):
        fields["nodeId"] = str(uuid.uuid4())
    if not store.get_meta("nodeKey"):
        fields["nodeKey"] = secrets.token_hex(32)

    store.update_metadata(**fields)
    logger.info("Node configured", panel_url=panel_url, node_name=fields["nodeName"], location=fields["location"])
    return store.metadata
