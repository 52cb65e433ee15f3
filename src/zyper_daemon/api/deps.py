"""Request dependencies: shared services and node-key authentication."""

import hmac
from typing import Optional, Union

from fastapi import Header, HTTPException, Request, WebSocket

from zyper_daemon.provisioning import InstanceManager
from zyper_daemon.startup import VersionCatalog
from zyper_daemon.store import InstanceStore
from zyper_daemon.supervisor import ProcessSupervisor


def get_store(request: Request) -> InstanceStore:
    return request.app.state.store


def get_supervisor(request: Request) -> ProcessSupervisor:
    return request.app.state.supervisor


def get_instances(request: Request) -> InstanceManager:
    return request.app.state.instances


def get_versions(request: Request) -> VersionCatalog:
    return request.app.state.versions


def expected_node_key(connection: Union[Request, WebSocket]) -> Optional[str]:
    """The environment wins over the node document; None disables auth."""
    state = connection.app.state
    return state.settings.node_key or state.store.get_meta("nodeKey")


def key_matches(candidate: Optional[str], expected: str) -> bool:
    if not candidate:
        return False
    return hmac.compare_digest(candidate.encode(), expected.encode())


async def require_node_key(
    request: Request,
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> None:
    expected = expected_node_key(request)
    if not expected:
        return
    bearer = authorization[7:] if authorization and authorization.startswith("Bearer ") else None
    if key_matches(bearer, expected) or key_matches(x_api_key, expected):
        return
    raise HTTPException(status_code=401, detail="Unauthorized")
