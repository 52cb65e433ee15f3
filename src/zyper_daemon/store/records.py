"""File-backed instance record store.

The whole node state lives in one JSON document::

    {
        "nodeId": "...", "nodeKey": "...", "nodeName": "...", ...,
        "servers": {"<instance id>": {...InstanceConfig...}},
        "stats": {...}
    }

Every mutation is followed by a synchronous, atomic save. A missing,
unreadable or malformed document loads as an empty store.
"""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import structlog
from pydantic import ValidationError

from zyper_daemon.core.exceptions import InstanceNotFoundError
from zyper_daemon.core.models import InstanceConfig

logger = structlog.get_logger()

SERVERS_KEY = "servers"


class InstanceStore:
    """Mapping of instance id to InstanceConfig plus node-wide metadata."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.RLock()
        self._instances: Dict[str, InstanceConfig] = {}
        self._metadata: Dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """(Re)load the document from disk."""
        with self._lock:
            self._instances = {}
            self._metadata = {}

            if not self.path.exists():
                logger.info("Node document not found, starting empty", path=str(self.path))
                return

            try:
                document = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning("Node document unreadable, starting empty", path=str(self.path), error=str(e))
                return

            if not isinstance(document, dict):
                logger.warning("Node document is not an object, starting empty", path=str(self.path))
                return

            servers = document.pop(SERVERS_KEY, None) or {}
            self._metadata = document
            if not isinstance(servers, dict):
                logger.warning("Ignoring malformed servers section", path=str(self.path))
                return

            for instance_id, raw in servers.items():
                try:
                    config = InstanceConfig.model_validate({**raw, "id": instance_id})
                except (ValidationError, TypeError) as e:
                    logger.warning("Skipping malformed instance record", instance_id=instance_id, error=str(e))
                    continue
                self._instances[instance_id] = config

            logger.info("Node document loaded", path=str(self.path), instances=len(self._instances))

    def save(self) -> None:
        """Write the document atomically (temp file + rename)."""
        with self._lock:
            document = dict(self._metadata)
            document[SERVERS_KEY] = {
                instance_id: config.to_document() for instance_id, config in self._instances.items()
            }

            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".node-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise

    # -- Instances ---------------------------------------------------------

    def get(self, instance_id: str) -> InstanceConfig:
        with self._lock:
            config = self._instances.get(instance_id)
            if config is None:
                raise InstanceNotFoundError(f"Server {instance_id} not found", code="instance_not_found")
            return config.model_copy(deep=True)

    def exists(self, instance_id: str) -> bool:
        with self._lock:
            return instance_id in self._instances

    def list(self) -> List[InstanceConfig]:
        with self._lock:
            return [config.model_copy(deep=True) for config in self._instances.values()]

    def ids(self) -> List[str]:
        with self._lock:
            return list(self._instances)

    def create(self, config: InstanceConfig) -> InstanceConfig:
        with self._lock:
            if config.id in self._instances:
                raise ValueError(f"Instance {config.id} already exists")
            self._instances[config.id] = config.model_copy(deep=True)
            self.save()
            return config

    def update(self, instance_id: str, mutator: Callable[[InstanceConfig], None]) -> InstanceConfig:
        """Apply ``mutator`` to a copy of the record, then persist it.

        The stored record is replaced only if the mutator returns normally
        and the result still validates.
        """
        with self._lock:
            current = self.get(instance_id)
            mutator(current)
            updated = InstanceConfig.model_validate(current.model_dump())
            self._instances[instance_id] = updated
            self.save()
            return updated.model_copy(deep=True)

    def delete(self, instance_id: str) -> None:
        with self._lock:
            if instance_id not in self._instances:
                raise InstanceNotFoundError(f"Server {instance_id} not found", code="instance_not_found")
            del self._instances[instance_id]
            self.save()

    # -- Node metadata -----------------------------------------------------

    @property
    def metadata(self) -> Dict[str, Any]:
        with self._lock:
            return json.loads(json.dumps(self._metadata))

    def get_meta(self, key: str, default: Optional[Any] = None) -> Any:
        with self._lock:
            return self._metadata.get(key, default)

    def update_metadata(self, **fields: Any) -> None:
        with self._lock:
            self._metadata.update(fields)
            self.save()
