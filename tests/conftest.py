"""
Pytest configuration and fixtures for Zyper daemon tests.
"""

import asyncio
import itertools
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from zyper_daemon.core.config import Settings
from zyper_daemon.core.exceptions import NotRunningError
from zyper_daemon.core.models import InstanceConfig, ServerKind
from zyper_daemon.store import InstanceStore
from zyper_daemon.supervisor.models import ExitStatus, LaunchSpec

_pids = itertools.count(4000)


class FakeHandle:
    """Stand-in for a pty process, driven directly by tests."""

    def __init__(self, spec: LaunchSpec, on_output, on_exit):
        self.pid = next(_pids)
        self.spec = spec
        self.on_output = on_output
        self.on_exit = on_exit
        self.written: List[bytes] = []
        self.signals: List[int] = []
        self.exit_on_signal = True
        self.ignored_signals: Set[int] = set()
        self.responder: Optional[Callable[[bytes], None]] = None
        self._status: Optional[ExitStatus] = None
        self._exited = asyncio.Event()

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    def emit(self, text: str) -> None:
        self.on_output(text)

    def exit(self, returncode: int = 0) -> None:
        if self._exited.is_set():
            return
        self._status = ExitStatus.from_returncode(returncode, stop_requested=bool(self.signals))
        self._exited.set()
        self.on_exit(self._status)

    def write(self, data: bytes) -> None:
        if self.exited:
            raise NotRunningError("Console stream is closed", code="stream_closed")
        self.written.append(data)
        if self.responder is not None:
            asyncio.get_running_loop().call_soon(self.responder, data)

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        if self.exit_on_signal and sig not in self.ignored_signals:
            # Exit is observed later, like a real process
            asyncio.get_running_loop().call_soon(self.exit, -sig)

    async def wait(self) -> ExitStatus:
        await self._exited.wait()
        return self._status


class FakeLauncher:
    """Launcher that records launches instead of spawning processes."""

    def __init__(self):
        self.launches: List[FakeHandle] = []
        self.error: Optional[Exception] = None
        self.exit_on_signal = True

    async def launch(self, spec: LaunchSpec, on_output, on_exit) -> FakeHandle:
        # Yield so concurrent callers interleave here
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        handle = FakeHandle(spec, on_output, on_exit)
        handle.exit_on_signal = self.exit_on_signal
        self.launches.append(handle)
        return handle

    @property
    def last(self) -> FakeHandle:
        return self.launches[-1]


class RecordingSubscriber:
    """Console subscriber that keeps every event it is sent."""

    def __init__(self, label: Optional[str] = None, fail: bool = False):
        self.label = label
        self.fail = fail
        self.events: List[Dict[str, Any]] = []

    async def send(self, event: Dict[str, Any]) -> None:
        if self.fail:
            raise ConnectionError("subscriber went away")
        self.events.append(event)

    def outputs(self, type: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            e["data"] for e in self.events
            if e["event"] == "console-output" and (type is None or e["data"]["type"] == type)
        ]

    def messages(self, type: Optional[str] = None) -> List[str]:
        return [data["message"] for data in self.outputs(type)]

    def named(self, name: str) -> List[Dict[str, Any]]:
        return [e["data"] for e in self.events if e["event"] == name]


async def drain(rounds: int = 5) -> None:
    """Let subscriber sender tasks and scheduled callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0.01)


def make_instance(
    store: InstanceStore,
    root: Path,
    instance_id: str = "A",
    kind: ServerKind = ServerKind.VANILLA,
    script: str = "#!/bin/bash\necho started\n",
    **fields: Any,
) -> InstanceConfig:
    directory = root / instance_id
    directory.mkdir(parents=True, exist_ok=True)
    (directory / "start.sh").write_text(script)
    config = InstanceConfig(
        id=instance_id,
        name=fields.pop("name", f"server-{instance_id}"),
        type=kind,
        directory=str(directory),
        **fields,
    )
    return store.create(config)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        config_path=str(tmp_path / "config" / "node.json"),
        servers_dir=str(tmp_path / "servers"),
        restart_settle_seconds=0.05,
        stop_timeout_seconds=1.0,
        log_format="console",
        node_key=None,
    )


@pytest.fixture
def store(settings) -> InstanceStore:
    return InstanceStore(Path(settings.config_path))


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def instances_root(tmp_path) -> Path:
    root = tmp_path / "instances"
    root.mkdir()
    return root
