"""Core data models for the Zyper daemon."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ServerKind(str, Enum):
    """Kind of server an instance runs."""

    VANILLA = "vanilla"
    PAPER = "paper"
    PURPUR = "purpur"
    SPIGOT = "spigot"
    BUNGEE = "bungee"
    VELOCITY = "velocity"

    @property
    def is_proxy(self) -> bool:
        return self in (ServerKind.BUNGEE, ServerKind.VELOCITY)

    @property
    def default_port(self) -> int:
        if self == ServerKind.BUNGEE:
            return 25577
        if self == ServerKind.VELOCITY:
            return 25578
        return 25565

    @classmethod
    def from_image(cls, image: Optional[str]) -> "ServerKind":
        """Infer the kind from a container image name, defaulting to vanilla."""
        if image:
            for kind in (cls.PAPER, cls.SPIGOT, cls.PURPUR, cls.BUNGEE, cls.VELOCITY):
                if kind.value in image:
                    return kind
        return cls.VANILLA


class InstanceConfig(BaseModel):
    """Persisted configuration of one instance.

    Stored in camelCase inside the node document.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(..., description="Opaque unique identifier")
    name: str = Field(..., description="Display name")
    type: ServerKind = Field(ServerKind.VANILLA, description="Server kind")
    version: str = Field("1.20.1", description="Declared server version")
    build: str = Field("latest", description="Build number for kinds that have builds")
    memory: int = Field(1024, description="Allocated memory in MB")
    cpu: int = Field(100, description="CPU share in percent")
    port: int = Field(25565, description="Network port")
    directory: str = Field(..., description="Working directory")
    environment: Dict[str, str] = Field(default_factory=dict)
    startup_script: str = Field("start.sh", description="Launch script inside the directory")
    image: str = Field("itzg/minecraft-server")
    created: datetime = Field(default_factory=utcnow)
    last_started: Optional[datetime] = Field(None)

    @field_validator("environment", mode="before")
    @classmethod
    def stringify_environment(cls, v: Any) -> Any:
        """Environment values are always passed to the process as strings."""
        if isinstance(v, dict):
            return {str(key): "" if value is None else str(value) for key, value in v.items()}
        return v

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class CreateInstanceRequest(BaseModel):
    """Request to provision a new instance."""

    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    image: Optional[str] = None
    memory: Optional[int] = None
    cpu: Optional[int] = None
    port: Optional[int] = None
    env: List[str] = Field(default_factory=list, description="KEY=VALUE entries")
    server_type: Optional[ServerKind] = Field(None, alias="serverType")
    version: Optional[str] = None
    build: Optional[str] = None

    def parsed_env(self) -> Dict[str, str]:
        environment: Dict[str, str] = {}
        for entry in self.env:
            key, _, value = entry.partition("=")
            if key:
                environment[key] = value
        return environment


class StopSignal(str, Enum):
    """How a stop request terminates the process tree."""

    GRACEFUL = "graceful"
    KILL = "kill"


class StopRequest(BaseModel):
    signal: StopSignal = StopSignal.GRACEFUL


class CommandRequest(BaseModel):
    command: str


class ChangeVersionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: str
    server_type: Optional[ServerKind] = Field(None, alias="serverType")
    build: Optional[str] = None


class InstanceStatus(BaseModel):
    """Snapshot of an instance's runtime state."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    running: bool
    state: str
    pid: Optional[int] = None
    uptime_seconds: float = 0.0
    started_at: Optional[datetime] = None
    last_exit: Optional[Dict[str, Any]] = None
