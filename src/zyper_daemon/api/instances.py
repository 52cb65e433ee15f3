"""Instance lifecycle endpoints."""

from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Body, Depends, Query

from zyper_daemon.core.models import (
    ChangeVersionRequest,
    CommandRequest,
    CreateInstanceRequest,
    StopRequest,
)
from zyper_daemon.provisioning import InstanceManager
from zyper_daemon.supervisor import ProcessSupervisor, ResourceManager

from .deps import get_instances, get_supervisor, require_node_key

router = APIRouter(prefix="/instances", dependencies=[Depends(require_node_key)])
logger = structlog.get_logger()

NOT_RUNNING_LOGS = "Server is not running. Start it to see logs."


def _status_body(status) -> Dict[str, Any]:
    return {"success": True, **status.model_dump(mode="json", by_alias=True)}


@router.get("")
async def list_instances(instances: InstanceManager = Depends(get_instances)) -> List[Dict[str, Any]]:
    return instances.list_summaries()


@router.post("/create")
async def create_instance(
    request: CreateInstanceRequest,
    instances: InstanceManager = Depends(get_instances),
) -> Dict[str, Any]:
    config = instances.create(request)
    return {"success": True, "id": config.id, "inspect": config.to_document()}


@router.get("/{instance_id}")
async def get_instance(instance_id: str, instances: InstanceManager = Depends(get_instances)) -> Dict[str, Any]:
    return instances.detail(instance_id)


@router.delete("/{instance_id}")
async def delete_instance(instance_id: str, instances: InstanceManager = Depends(get_instances)) -> Dict[str, Any]:
    await instances.delete(instance_id)
    return {"success": True}


@router.post("/{instance_id}/start")
async def start_instance(
    instance_id: str,
    supervisor: ProcessSupervisor = Depends(get_supervisor),
) -> Dict[str, Any]:
    return _status_body(await supervisor.start(instance_id))


@router.post("/{instance_id}/stop")
async def stop_instance(
    instance_id: str,
    request: Optional[StopRequest] = Body(default=None),
    supervisor: ProcessSupervisor = Depends(get_supervisor),
) -> Dict[str, Any]:
    request = request or StopRequest()
    return _status_body(await supervisor.stop(instance_id, request.signal))


@router.post("/{instance_id}/restart")
async def restart_instance(
    instance_id: str,
    supervisor: ProcessSupervisor = Depends(get_supervisor),
) -> Dict[str, Any]:
    return _status_body(await supervisor.restart(instance_id))


@router.post("/{instance_id}/command")
async def send_command(
    instance_id: str,
    request: CommandRequest,
    supervisor: ProcessSupervisor = Depends(get_supervisor),
) -> Dict[str, Any]:
    await supervisor.send_command(instance_id, request.command)
    return {"success": True, "output": "Command sent"}


@router.get("/{instance_id}/status")
async def instance_status(
    instance_id: str,
    instances: InstanceManager = Depends(get_instances),
    supervisor: ProcessSupervisor = Depends(get_supervisor),
) -> Dict[str, Any]:
    instances.store.get(instance_id)
    return _status_body(supervisor.status(instance_id))


@router.get("/{instance_id}/logs")
async def instance_logs(
    instance_id: str,
    tail: int = Query(100, ge=1, le=1000),
    instances: InstanceManager = Depends(get_instances),
    supervisor: ProcessSupervisor = Depends(get_supervisor),
) -> Dict[str, Any]:
    instances.store.get(instance_id)
    if not supervisor.is_running(instance_id):
        return {"success": True, "logs": NOT_RUNNING_LOGS, "count": 0}

    output = supervisor.get_process(instance_id).output
    return {
        "success": True,
        "logs": output.text(tail),
        "count": min(tail, len(output)),
    }


@router.get("/{instance_id}/stats")
async def instance_stats(
    instance_id: str,
    instances: InstanceManager = Depends(get_instances),
    supervisor: ProcessSupervisor = Depends(get_supervisor),
) -> Dict[str, Any]:
    instances.store.get(instance_id)
    process = supervisor.get_process(instance_id)
    if process is None:
        return {"running": False, "cpu": 0, "memory": 0, "uptime": 0}

    stats = ResourceManager.get_process_stats(process.pid, process.probes)
    stats.update({"running": True, "uptime": process.uptime})
    return stats


@router.post("/{instance_id}/change-version")
async def change_version(
    instance_id: str,
    request: ChangeVersionRequest,
    instances: InstanceManager = Depends(get_instances),
) -> Dict[str, Any]:
    config = await instances.change_version(instance_id, request)
    return {
        "success": True,
        "message": f"Server version updated to {config.version}",
        "server": {
            "id": config.id,
            "name": config.name,
            "type": config.to_document()["type"],
            "version": config.version,
            "build": config.build,
        },
    }
