"""Server version listings."""

from typing import Any, Dict

from fastapi import APIRouter, Depends

from zyper_daemon.startup import VersionCatalog

from .deps import get_versions, require_node_key

router = APIRouter(prefix="/versions", dependencies=[Depends(require_node_key)])


@router.get("/paper/{version}/builds")
async def paper_builds(version: str, catalog: VersionCatalog = Depends(get_versions)) -> Dict[str, Any]:
    return {"success": True, **(await catalog.paper_builds(version))}


@router.get("/{server_type}")
async def list_versions(server_type: str, catalog: VersionCatalog = Depends(get_versions)) -> Dict[str, Any]:
    versions = await catalog.versions(server_type)
    return {
        "success": True,
        "type": server_type.lower(),
        "versions": versions,
        "default": versions[0] if versions else None,
    }
