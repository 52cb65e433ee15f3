"""Creation, reconfiguration and removal of instances."""

import shutil
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List

import aiofiles.os
import structlog

from zyper_daemon.core.config import Settings
from zyper_daemon.core.exceptions import NotRunningError
from zyper_daemon.core.models import (
    ChangeVersionRequest,
    CreateInstanceRequest,
    InstanceConfig,
    ServerKind,
)
from zyper_daemon.startup import write_server_files, write_startup_script
from zyper_daemon.store import InstanceStore
from zyper_daemon.supervisor import ProcessSupervisor

logger = structlog.get_logger()

DEFAULT_VERSION = "1.20.1"
DEFAULT_MEMORY_MB = 1024
DEFAULT_CPU = 100
DEFAULT_IMAGE = "itzg/minecraft-server"

_rmtree = aiofiles.os.wrap(shutil.rmtree)


class InstanceManager:
    """Ties the record store, the launch script files and the supervisor."""

    def __init__(self, store: InstanceStore, supervisor: ProcessSupervisor, settings: Settings):
        self.store = store
        self.supervisor = supervisor
        self.settings = settings

    @property
    def instances_root(self) -> Path:
        return Path(self.settings.servers_dir).resolve() / "minecraft"

    def create(self, request: CreateInstanceRequest) -> InstanceConfig:
        """Provision a directory, launch script and record for a new instance."""
        instance_id = str(uuid.uuid4())
        environment = request.parsed_env()

        kind = request.server_type or ServerKind.from_image(request.image)
        version = request.version or environment.get("VERSION") or DEFAULT_VERSION
        memory = request.memory or DEFAULT_MEMORY_MB
        port = request.port or kind.default_port

        directory = self.instances_root / instance_id
        directory.mkdir(parents=True, exist_ok=True)

        environment.update({"VERSION": version, "MEMORY": str(memory), "PORT": str(port)})

        config = InstanceConfig(
            id=instance_id,
            name=request.name or f"{kind.value}-{int(time.time() * 1000)}",
            type=kind,
            version=version,
            build=request.build or "latest",
            memory=memory,
            cpu=request.cpu or DEFAULT_CPU,
            port=port,
            directory=str(directory),
            environment=environment,
            image=request.image or DEFAULT_IMAGE,
        )

        write_startup_script(config)
        write_server_files(config)
        self.store.create(config)

        logger.info(
            "Instance created",
            instance_id=instance_id,
            kind=kind.value,
            version=version,
            port=port,
            memory=memory,
        )
        return config

    async def change_version(self, instance_id: str, request: ChangeVersionRequest) -> InstanceConfig:
        """Switch version/kind; the next start downloads the new server jar."""
        config = self.store.get(instance_id)

        try:
            await self.supervisor.stop(instance_id)
        except NotRunningError:
            pass

        def apply(record: InstanceConfig) -> None:
            record.version = request.version
            record.type = request.server_type or record.type
            record.build = request.build or "latest"
            record.environment["VERSION"] = request.version

        config = self.store.update(instance_id, apply)
        write_startup_script(config)

        jar = Path(config.directory) / "server.jar"
        if await aiofiles.os.path.exists(jar):
            await aiofiles.os.remove(jar)

        logger.info(
            "Instance version changed",
            instance_id=instance_id,
            kind=ServerKind(config.type).value,
            version=config.version,
            build=config.build,
        )
        return config

    async def delete(self, instance_id: str) -> None:
        """Kill the process and drop the record, then remove the directory."""
        config = self.store.get(instance_id)
        await self.supervisor.remove(instance_id)

        directory = Path(config.directory)
        if await aiofiles.os.path.isdir(directory):
            await _rmtree(directory, ignore_errors=True)

        logger.info("Instance deleted", instance_id=instance_id)

    def summary(self, config: InstanceConfig) -> Dict[str, Any]:
        document = config.to_document()
        return {
            "id": config.id,
            "name": config.name,
            "type": document["type"],
            "status": "running" if self.supervisor.is_running(config.id) else "stopped",
            "port": config.port,
            "memory": config.memory,
            "version": config.version,
            "created": document["created"],
            "lastStarted": document["lastStarted"],
        }

    def list_summaries(self) -> List[Dict[str, Any]]:
        return [self.summary(config) for config in self.store.list()]

    def detail(self, instance_id: str) -> Dict[str, Any]:
        config = self.store.get(instance_id)
        status = self.supervisor.status(instance_id)
        document = config.to_document()
        document.update({
            "status": "running" if status.running else "stopped",
            "pid": status.pid,
            "uptime": status.uptime_seconds,
            "lastExit": status.last_exit,
        })
        return document
