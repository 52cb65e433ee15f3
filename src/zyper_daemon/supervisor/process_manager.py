"""Lifecycle management for instance processes."""

import asyncio
import os
import signal
import time
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol

import structlog
from prometheus_client import Counter, Gauge

from zyper_daemon.core.config import Settings
from zyper_daemon.core.exceptions import AlreadyRunningError, LaunchError, NotRunningError
from zyper_daemon.core.models import InstanceConfig, InstanceStatus, StopSignal
from zyper_daemon.hub import events
from zyper_daemon.store import InstanceStore

from .console_buffer import ConsoleBuffer, OutputRecord
from .models import ExitStatus, InstanceSlot, InstanceState, LaunchSpec, RunningProcess
from .pty_process import ExitCallback, OutputCallback, PtyLauncher
from .resource_manager import ResourceManager

if TYPE_CHECKING:
    from zyper_daemon.hub.console_hub import ConsoleHub

logger = structlog.get_logger()

INSTANCE_STARTS = Counter(
    "zyper_instance_starts_total",
    "Instance processes started",
)

INSTANCE_EXITS = Counter(
    "zyper_instance_exits_total",
    "Instance processes that exited",
    ["crashed"],
)

RUNNING_INSTANCES = Gauge(
    "zyper_running_instances",
    "Instances with a live process",
)

STOP_SIGNALS = {
    StopSignal.GRACEFUL: signal.SIGTERM,
    StopSignal.KILL: signal.SIGKILL,
}


class Launcher(Protocol):
    async def launch(self, spec: LaunchSpec, on_output: OutputCallback, on_exit: ExitCallback): ...


class ProcessSupervisor:
    """Owns the running/stopped state of every instance.

    All mutation of the running-process registry and the output buffers
    happens here. Operations on one instance id are serialised by that
    instance's lock; different ids never contend.
    """

    def __init__(
        self,
        store: InstanceStore,
        hub: Optional["ConsoleHub"] = None,
        settings: Optional[Settings] = None,
        launcher: Optional[Launcher] = None,
    ):
        self.store = store
        self.hub = hub
        self.settings = settings or Settings()
        self.launcher = launcher or PtyLauncher()
        self._slots: Dict[str, InstanceSlot] = {}
        if hub is not None:
            hub.bind(self)

    # -- Queries -----------------------------------------------------------

    def _slot(self, instance_id: str) -> InstanceSlot:
        slot = self._slots.get(instance_id)
        if slot is None:
            slot = InstanceSlot(instance_id=instance_id)
            self._slots[instance_id] = slot
        return slot

    def is_running(self, instance_id: str) -> bool:
        slot = self._slots.get(instance_id)
        return slot is not None and slot.is_running

    @property
    def running_ids(self) -> List[str]:
        return [instance_id for instance_id, slot in self._slots.items() if slot.is_running]

    def get_process(self, instance_id: str) -> Optional[RunningProcess]:
        slot = self._slots.get(instance_id)
        return slot.process if slot is not None else None

    def status(self, instance_id: str) -> InstanceStatus:
        """Current state; never blocks and never touches the process."""
        slot = self._slots.get(instance_id)
        if slot is None or slot.process is None:
            return InstanceStatus(
                running=False,
                state=InstanceState.STOPPED.value,
                last_exit=slot.last_exit.to_dict() if slot is not None and slot.last_exit else None,
            )
        process = slot.process
        return InstanceStatus(
            running=True,
            state=slot.state.value,
            pid=process.pid,
            uptime_seconds=process.uptime,
            started_at=process.started_at_datetime,
            last_exit=slot.last_exit.to_dict() if slot.last_exit else None,
        )

    def recent_output(self, instance_id: str, count: int) -> List[OutputRecord]:
        process = self.get_process(instance_id)
        if process is None:
            return []
        return process.output.tail(count)

    # -- Lifecycle ---------------------------------------------------------

    async def start(self, instance_id: str) -> InstanceStatus:
        # Unknown ids never get a slot
        self.store.get(instance_id)
        slot = self._slot(instance_id)
        async with slot.lock:
            if slot.restart_pending:
                raise AlreadyRunningError(f"Server {instance_id} is restarting", code="restart_pending")
            return await self._start_locked(slot)

    async def _start_locked(self, slot: InstanceSlot) -> InstanceStatus:
        instance_id = slot.instance_id
        config = self.store.get(instance_id)
        if slot.is_running:
            raise AlreadyRunningError(f"Server {instance_id} already running", code="already_running")

        spec = self._launch_spec(config)
        buffer = ConsoleBuffer(self.settings.console_history)

        try:
            handle = await self.launcher.launch(
                spec,
                lambda chunk: self._on_output(instance_id, buffer, chunk),
                lambda status: self._on_exit(instance_id, buffer, status),
            )
        except LaunchError:
            raise
        except OSError as e:
            raise LaunchError(f"Failed to launch server {instance_id}: {e}", code="spawn_failed") from e

        process = RunningProcess(
            instance_id=instance_id,
            pid=handle.pid,
            started_at=time.time(),
            handle=handle,
            output=buffer,
        )
        ResourceManager.prime_cpu(handle.pid, process.probes)
        slot.process = process
        slot.state = InstanceState.RUNNING
        INSTANCE_STARTS.inc()
        RUNNING_INSTANCES.set(len(self.running_ids))

        try:
            self.store.update(instance_id, _mark_started)
        except OSError as e:
            logger.error("Failed to persist lastStarted", instance_id=instance_id, error=str(e))

        logger.info("Server started", instance_id=instance_id, pid=handle.pid)
        self._publish(instance_id, events.server_started(handle.pid, instance_id))
        return self.status(instance_id)

    def _launch_spec(self, config: InstanceConfig) -> LaunchSpec:
        directory = Path(config.directory)
        if not directory.is_dir():
            raise LaunchError(f"Server directory does not exist: {directory}", code="bad_directory")

        script = directory / config.startup_script
        if not script.is_file():
            raise LaunchError(f"Startup script not found: {script}", code="missing_script")

        env = dict(os.environ)
        env.update(config.environment)
        env["TERM"] = "xterm-color"

        return LaunchSpec(
            instance_id=config.id,
            argv=["bash", str(script)],
            cwd=str(directory),
            env=env,
            cols=self.settings.pty_cols,
            rows=self.settings.pty_rows,
        )

    async def stop(self, instance_id: str, signal_kind: StopSignal = StopSignal.GRACEFUL) -> InstanceStatus:
        """Signal the process tree and return without waiting for exit."""
        slot = self._slots.get(instance_id)
        if slot is None:
            raise NotRunningError(f"Server {instance_id} not running", code="not_running")
        async with slot.lock:
            if slot.restart_pending:
                logger.info("Stop cancels pending restart", instance_id=instance_id)
                slot.restart_token = None
                if not slot.is_running:
                    return self.status(instance_id)

            if not slot.is_running:
                raise NotRunningError(f"Server {instance_id} not running", code="not_running")

            self._signal(slot.process, STOP_SIGNALS[signal_kind])
        return self.status(instance_id)

    async def restart(self, instance_id: str) -> InstanceStatus:
        """Stop, wait for exit and the settle delay, then start again.

        The instance lock is not held across the wait. Instead a restart
        token is left on the slot: a concurrent Start fails while it is
        present, a concurrent Stop or Remove clears it and so cancels this
        restart.
        """
        self.store.get(instance_id)
        slot = self._slot(instance_id)
        token = object()

        async with slot.lock:
            self.store.get(instance_id)
            if slot.restart_pending:
                raise AlreadyRunningError(f"Server {instance_id} is already restarting", code="restart_pending")
            old = slot.process if slot.is_running else None
            if old is not None:
                logger.info("Restarting server", instance_id=instance_id, pid=old.pid)
                self._signal(old, signal.SIGTERM)
            slot.restart_token = token

        try:
            if old is not None:
                await self._wait_for_exit(old)
                await asyncio.sleep(self.settings.restart_settle_seconds)

            async with slot.lock:
                if slot.restart_token is not token:
                    raise NotRunningError(
                        f"Restart of server {instance_id} was cancelled",
                        code="restart_cancelled",
                    )
                slot.restart_token = None
                return await self._start_locked(slot)
        finally:
            if slot.restart_token is token:
                slot.restart_token = None

    async def send_command(self, instance_id: str, text: str) -> None:
        """Write ``text`` and a newline to the console; no acknowledgement."""
        slot = self._slots.get(instance_id)
        if slot is None or not slot.is_running:
            raise NotRunningError(f"Server {instance_id} not running", code="not_running")

        async with slot.lock:
            if not slot.is_running:
                raise NotRunningError(f"Server {instance_id} not running", code="not_running")
            slot.process.handle.write((text + "\n").encode("utf-8"))

    async def remove(self, instance_id: str) -> None:
        """Kill the instance's process and delete its record.

        The record goes in the same locked step as the slot, so a Start
        queued behind the lock finds no record and fails with NotFound.
        """
        slot = self._slots.get(instance_id)
        if slot is None:
            if self.store.exists(instance_id):
                self.store.delete(instance_id)
            return

        async with slot.lock:
            if self.store.exists(instance_id):
                self.store.delete(instance_id)
            slot.restart_token = None
            process = slot.process
            if process is not None:
                logger.warning("Killing running server before delete", instance_id=instance_id, pid=process.pid)
                self._signal(process, signal.SIGKILL)
                slot.process = None
                slot.state = InstanceState.STOPPED
            self._slots.pop(instance_id, None)
        RUNNING_INSTANCES.set(len(self.running_ids))

    async def shutdown(self) -> None:
        """Stop every running instance; used when the daemon exits."""
        running = [slot.process for slot in self._slots.values() if slot.process is not None]
        if not running:
            return

        logger.info("Stopping all servers", count=len(running))
        for process in running:
            self._signal(process, signal.SIGTERM)
        await asyncio.gather(*(self._wait_for_exit(process) for process in running), return_exceptions=True)

    # -- Internals ---------------------------------------------------------

    def _signal(self, process: RunningProcess, sig: int) -> None:
        process.stop_requested = True
        process.handle.send_signal(sig)

    async def _wait_for_exit(self, process: RunningProcess) -> ExitStatus:
        try:
            return await asyncio.wait_for(process.handle.wait(), timeout=self.settings.stop_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("Server didn't stop gracefully, killing", instance_id=process.instance_id, pid=process.pid)
            self._signal(process, signal.SIGKILL)
            return await process.handle.wait()

    def _current(self, instance_id: str, buffer: ConsoleBuffer) -> Optional[InstanceSlot]:
        slot = self._slots.get(instance_id)
        if slot is not None and slot.process is not None and slot.process.output is buffer:
            return slot
        return None

    def _on_output(self, instance_id: str, buffer: ConsoleBuffer, chunk: str) -> None:
        if self._current(instance_id, buffer) is None:
            return
        record = buffer.append(chunk)
        event = events.console_output(record.chunk, events.LOG, record.timestamp_ms, server_id=instance_id)
        self._publish(instance_id, event)

    def _on_exit(self, instance_id: str, buffer: ConsoleBuffer, status: ExitStatus) -> None:
        slot = self._current(instance_id, buffer)
        if slot is not None:
            status = replace(status, stop_requested=status.stop_requested or slot.process.stop_requested)
            slot.process = None
            slot.state = InstanceState.STOPPED
            slot.last_exit = status

        INSTANCE_EXITS.labels(crashed=str(status.crashed).lower()).inc()
        RUNNING_INSTANCES.set(len(self.running_ids))

        if status.crashed:
            logger.warning("Server crashed", instance_id=instance_id, exit_code=status.exit_code, signal=status.signal)
        else:
            logger.info("Server exited", instance_id=instance_id, exit_code=status.exit_code, signal=status.signal)

        self._publish(instance_id, events.server_stopped(status.to_dict(), instance_id))

    def _publish(self, instance_id: str, event: dict) -> None:
        if self.hub is not None:
            self.hub.publish(instance_id, event)


def _mark_started(config: InstanceConfig) -> None:
    config.last_started = datetime.now(timezone.utc)
