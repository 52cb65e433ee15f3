"""File manager endpoints for instance directories."""

from typing import Any, Dict, Optional
from urllib.parse import unquote

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, ConfigDict, Field

from zyper_daemon.files import InstanceFiles
from zyper_daemon.store import InstanceStore

from .deps import get_store, require_node_key

router = APIRouter(prefix="/instances/{instance_id}/files", dependencies=[Depends(require_node_key)])


class ListRequest(BaseModel):
    path: str = "/"


class PathRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field(..., alias="filePath")


class WriteRequest(PathRequest):
    content: str = ""


class DeleteRequest(PathRequest):
    force: bool = False


class UploadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field("/", alias="filePath")
    file_name: str = Field(..., alias="fileName")
    file_data: str = Field(..., alias="fileData")
    encoding: str = "base64"


def _files(instance_id: str, store: InstanceStore) -> InstanceFiles:
    return InstanceFiles(store.get(instance_id).directory)


@router.post("/list")
async def list_files(
    instance_id: str,
    request: Optional[ListRequest] = Body(default=None),
    store: InstanceStore = Depends(get_store),
) -> Dict[str, Any]:
    request = request or ListRequest()
    result = await _files(instance_id, store).list(request.path)
    return {"success": True, **result}


@router.post("/read")
async def read_file(
    instance_id: str,
    request: PathRequest,
    store: InstanceStore = Depends(get_store),
) -> Dict[str, Any]:
    # Panels send the path URI-encoded
    result = await _files(instance_id, store).read(unquote(request.file_path))
    if result.get("isBinary"):
        return {"success": False, "error": "Cannot read binary file", **result}
    return {"success": True, **result}


@router.post("/write")
async def write_file(
    instance_id: str,
    request: WriteRequest,
    store: InstanceStore = Depends(get_store),
) -> Dict[str, Any]:
    result = await _files(instance_id, store).write(request.file_path, request.content)
    return {"success": True, **result}


@router.post("/delete")
async def delete_file(
    instance_id: str,
    request: DeleteRequest,
    store: InstanceStore = Depends(get_store),
) -> Dict[str, Any]:
    result = await _files(instance_id, store).delete(request.file_path, force=request.force)
    return {"success": True, **result}


@router.post("/delete-force")
async def force_delete_file(
    instance_id: str,
    request: PathRequest,
    store: InstanceStore = Depends(get_store),
) -> Dict[str, Any]:
    result = await _files(instance_id, store).delete(request.file_path, force=True)
    return {"success": True, **result}


@router.post("/upload")
async def upload_file(
    instance_id: str,
    request: UploadRequest,
    store: InstanceStore = Depends(get_store),
) -> Dict[str, Any]:
    result = await _files(instance_id, store).upload(
        request.file_path,
        request.file_name,
        request.file_data,
        encoding=request.encoding,
    )
    return {"success": True, **result}
