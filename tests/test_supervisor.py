"""Tests for the process supervisor."""

import asyncio
import signal
from pathlib import Path

import pytest

from conftest import RecordingSubscriber, drain, make_instance
from zyper_daemon.core.exceptions import (
    AlreadyRunningError,
    InstanceNotFoundError,
    LaunchError,
    NotRunningError,
)
from zyper_daemon.core.models import StopSignal
from zyper_daemon.hub import ConsoleHub
from zyper_daemon.store import InstanceStore
from zyper_daemon.supervisor import ExitStatus, ProcessSupervisor


def build(store, settings, launcher):
    hub = ConsoleHub(settings)
    supervisor = ProcessSupervisor(store, hub=hub, settings=settings, launcher=launcher)
    return supervisor, hub


class TestExitStatus:
    """Test exit classification."""

    def test_clean_exit_is_not_a_crash(self):
        status = ExitStatus.from_returncode(0)
        assert status.exit_code == 0
        assert status.signal is None
        assert not status.crashed
        assert "error" not in status.to_dict()

    def test_nonzero_exit_is_a_crash(self):
        status = ExitStatus.from_returncode(1)
        assert status.crashed
        data = status.to_dict()
        assert data["exitCode"] == 1
        assert data["error"]["error"] == "CrashExit"

    def test_signal_exit(self):
        status = ExitStatus.from_returncode(-9)
        assert status.exit_code is None
        assert status.signal == "SIGKILL"
        assert status.crashed

    def test_requested_stop_is_not_a_crash(self):
        status = ExitStatus.from_returncode(-15, stop_requested=True)
        assert status.signal == "SIGTERM"
        assert not status.crashed
        assert status.as_error() is None


class TestStart:
    """Test starting instances."""

    @pytest.mark.asyncio
    async def test_start_spawns_startup_script(self, store, settings, launcher, instances_root):
        config = make_instance(store, instances_root, "A", environment={"MOTD": "hello"})
        supervisor, _ = build(store, settings, launcher)

        status = await supervisor.start("A")

        assert status.running
        assert status.state == "running"
        assert status.pid == launcher.last.pid
        spec = launcher.last.spec
        assert spec.argv == ["bash", str(Path(config.directory) / "start.sh")]
        assert spec.cwd == config.directory
        assert spec.env["MOTD"] == "hello"
        assert spec.env["TERM"] == "xterm-color"
        assert (spec.cols, spec.rows) == (80, 30)

    @pytest.mark.asyncio
    async def test_start_persists_last_started(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)

        await supervisor.start("A")

        reloaded = InstanceStore(Path(settings.config_path))
        assert reloaded.get("A").last_started is not None

    @pytest.mark.asyncio
    async def test_concurrent_start_creates_one_process(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)

        results = await asyncio.gather(
            *(supervisor.start("A") for _ in range(5)),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        conflicts = [r for r in results if isinstance(r, AlreadyRunningError)]
        assert len(successes) == 1
        assert len(conflicts) == 4
        assert len(launcher.launches) == 1

    @pytest.mark.asyncio
    async def test_start_when_running_keeps_handle(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")
        first = launcher.last

        with pytest.raises(AlreadyRunningError):
            await supervisor.start("A")

        assert supervisor.get_process("A").handle is first
        assert len(launcher.launches) == 1

    @pytest.mark.asyncio
    async def test_start_unknown_instance(self, store, settings, launcher):
        supervisor, _ = build(store, settings, launcher)
        with pytest.raises(InstanceNotFoundError):
            await supervisor.start("missing")

    @pytest.mark.asyncio
    async def test_missing_script_is_launch_error(self, store, settings, launcher, instances_root):
        config = make_instance(store, instances_root, "A")
        (Path(config.directory) / "start.sh").unlink()
        supervisor, _ = build(store, settings, launcher)

        with pytest.raises(LaunchError):
            await supervisor.start("A")

        assert not supervisor.status("A").running
        assert launcher.launches == []

    @pytest.mark.asyncio
    async def test_os_error_is_launch_error(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        launcher.error = OSError("no such file")
        supervisor, _ = build(store, settings, launcher)

        with pytest.raises(LaunchError):
            await supervisor.start("A")

        assert supervisor.running_ids == []


class TestStop:
    """Test stopping instances."""

    @pytest.mark.asyncio
    async def test_stop_when_stopped(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)

        with pytest.raises(NotRunningError):
            await supervisor.stop("A")

    @pytest.mark.asyncio
    async def test_stop_returns_before_exit(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")

        status = await supervisor.stop("A")

        assert status.running
        assert launcher.last.signals == [signal.SIGTERM]

        await drain()
        status = supervisor.status("A")
        assert not status.running
        assert status.last_exit["signal"] == "SIGTERM"
        assert status.last_exit["crashed"] is False

    @pytest.mark.asyncio
    async def test_kill_signal(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")

        await supervisor.stop("A", StopSignal.KILL)

        assert launcher.last.signals == [signal.SIGKILL]

    @pytest.mark.asyncio
    async def test_start_after_stop(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")
        await supervisor.stop("A")
        await drain()

        status = await supervisor.start("A")

        assert status.running
        assert len(launcher.launches) == 2


class TestExit:
    """Test unexpected process exits."""

    @pytest.mark.asyncio
    async def test_crash_exit_publishes_one_terminal_event(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, hub = build(store, settings, launcher)
        viewer = RecordingSubscriber()
        await supervisor.start("A")
        hub.subscribe(viewer, "A")

        launcher.last.exit(1)
        await drain()

        status = supervisor.status("A")
        assert not status.running
        assert status.pid is None
        assert status.last_exit["exitCode"] == 1
        assert status.last_exit["crashed"] is True

        stopped = viewer.named("server_stopped")
        assert len(stopped) == 1
        assert stopped[0]["exitCode"] == 1
        assert stopped[0]["serverId"] == "A"
        assert stopped[0]["crashed"] is True
        assert stopped[0]["error"]["error"] == "CrashExit"

    @pytest.mark.asyncio
    async def test_crash_is_not_retried(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")

        launcher.last.exit(1)
        await drain()

        assert len(launcher.launches) == 1
        assert supervisor.running_ids == []

    @pytest.mark.asyncio
    async def test_clean_exit_after_stop_command(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")

        launcher.last.exit(0)
        await drain()

        assert supervisor.status("A").last_exit["crashed"] is False

    @pytest.mark.asyncio
    async def test_output_from_old_process_is_ignored(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")
        old = launcher.last
        old.exit(0)
        await supervisor.start("A")

        old.emit("stale output\n")

        assert supervisor.recent_output("A", 10) == []
        assert supervisor.is_running("A")


class TestOutput:
    """Test output capture."""

    @pytest.mark.asyncio
    async def test_output_is_buffered_in_order(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")

        launcher.last.emit("first\n")
        launcher.last.emit("second\n")

        records = supervisor.recent_output("A", 10)
        assert [r.chunk for r in records] == ["first\n", "second\n"]
        assert records[0].timestamp <= records[1].timestamp

    @pytest.mark.asyncio
    async def test_ring_buffer_evicts_oldest(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")

        for i in range(1050):
            launcher.last.emit(f"line {i}\n")

        buffer = supervisor.get_process("A").output
        assert len(buffer) == 1000
        assert buffer.evicted == 50
        records = supervisor.recent_output("A", 1000)
        assert records[0].chunk == "line 50\n"
        assert records[-1].chunk == "line 1049\n"

    @pytest.mark.asyncio
    async def test_no_output_when_stopped(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        assert supervisor.recent_output("A", 50) == []


class TestCommands:
    """Test console input."""

    @pytest.mark.asyncio
    async def test_send_command_writes_line(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")

        await supervisor.send_command("A", "list")

        assert launcher.last.written == [b"list\n"]

    @pytest.mark.asyncio
    async def test_send_command_when_stopped(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)

        with pytest.raises(NotRunningError):
            await supervisor.send_command("A", "list")


class TestRestart:
    """Test restart serialisation."""

    @pytest.mark.asyncio
    async def test_restart_orders_stop_before_start(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, hub = build(store, settings, launcher)
        viewer = RecordingSubscriber()
        hub.subscribe(viewer, "A")
        await supervisor.start("A")
        first = launcher.last
        first_started = supervisor.get_process("A").started_at

        status = await supervisor.restart("A")
        await drain()

        second = launcher.last
        assert second is not first
        assert first.exited
        assert first.signals == [signal.SIGTERM]
        assert status.running
        assert status.pid == second.pid
        assert supervisor.get_process("A").started_at > first_started

        lifecycle = [e["event"] for e in viewer.events if e["event"] != "console-output"]
        assert lifecycle == ["server_started", "server_stopped", "server_started"]

    @pytest.mark.asyncio
    async def test_restart_when_stopped_just_starts(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)

        status = await supervisor.restart("A")

        assert status.running
        assert len(launcher.launches) == 1

    @pytest.mark.asyncio
    async def test_start_during_restart_is_rejected(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")
        first = launcher.last
        first.exit_on_signal = False

        task = asyncio.create_task(supervisor.restart("A"))
        await drain(1)

        with pytest.raises(AlreadyRunningError):
            await supervisor.start("A")

        first.exit(0)
        status = await task
        assert status.running
        assert len(launcher.launches) == 2

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_restart(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")
        first = launcher.last
        first.exit_on_signal = False

        task = asyncio.create_task(supervisor.restart("A"))
        await drain(1)
        await supervisor.stop("A")
        first.exit(0)

        with pytest.raises(NotRunningError):
            await task
        assert len(launcher.launches) == 1
        assert not supervisor.status("A").running

    @pytest.mark.asyncio
    async def test_stop_during_settle_delay(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        slow = settings.model_copy(update={"restart_settle_seconds": 0.5})
        supervisor, _ = build(store, slow, launcher)
        await supervisor.start("A")

        task = asyncio.create_task(supervisor.restart("A"))
        await drain()
        assert not supervisor.status("A").running

        status = await supervisor.stop("A")

        assert not status.running
        with pytest.raises(NotRunningError):
            await task
        assert len(launcher.launches) == 1

    @pytest.mark.asyncio
    async def test_restart_escalates_to_kill(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        impatient = settings.model_copy(update={"stop_timeout_seconds": 0.1})
        supervisor, _ = build(store, impatient, launcher)
        await supervisor.start("A")
        first = launcher.last
        first.ignored_signals = {signal.SIGTERM}

        status = await supervisor.restart("A")

        assert first.signals == [signal.SIGTERM, signal.SIGKILL]
        assert status.running
        assert len(launcher.launches) == 2


class TestRemoveAndShutdown:
    """Test instance removal and daemon shutdown."""

    @pytest.mark.asyncio
    async def test_remove_detaches_immediately(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")
        handle = launcher.last

        await supervisor.remove("A")

        assert handle.signals == [signal.SIGKILL]
        assert not supervisor.is_running("A")
        assert supervisor.running_ids == []

        await drain()
        assert supervisor.status("A").last_exit is None

    @pytest.mark.asyncio
    async def test_remove_deletes_record(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        make_instance(store, instances_root, "B")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")

        await supervisor.remove("A")
        await supervisor.remove("B")

        assert store.ids() == []
        with pytest.raises(InstanceNotFoundError):
            await supervisor.start("A")
        assert len(launcher.launches) == 1

    @pytest.mark.asyncio
    async def test_start_queued_behind_remove_fails(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")
        await supervisor.stop("A")
        await drain()

        results = await asyncio.gather(
            supervisor.remove("A"),
            supervisor.start("A"),
            return_exceptions=True,
        )

        assert isinstance(results[1], InstanceNotFoundError)
        assert supervisor.running_ids == []
        assert len(launcher.launches) == 1

    @pytest.mark.asyncio
    async def test_remove_unknown_is_noop(self, store, settings, launcher):
        supervisor, _ = build(store, settings, launcher)
        await supervisor.remove("never-started")

    @pytest.mark.asyncio
    async def test_shutdown_stops_everything(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        make_instance(store, instances_root, "B")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")
        await supervisor.start("B")

        await supervisor.shutdown()

        assert all(handle.exited for handle in launcher.launches)
        assert supervisor.running_ids == []

    @pytest.mark.asyncio
    async def test_instances_do_not_share_locks(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        make_instance(store, instances_root, "B")
        supervisor, _ = build(store, settings, launcher)
        await supervisor.start("A")
        launcher.last.exit_on_signal = False

        restart = asyncio.create_task(supervisor.restart("A"))
        await drain(1)

        status = await supervisor.start("B")
        assert status.running

        launcher.launches[0].exit(0)
        await restart


class TestUnknownIds:
    """Test that requests for unknown ids leave no supervisor state behind."""

    @pytest.mark.asyncio
    async def test_rejected_requests_do_not_create_slots(self, store, settings, launcher, instances_root):
        make_instance(store, instances_root, "A")
        supervisor, _ = build(store, settings, launcher)

        for i in range(50):
            with pytest.raises(InstanceNotFoundError):
                await supervisor.start(f"bogus-{i}")
            with pytest.raises(InstanceNotFoundError):
                await supervisor.restart(f"ghost-{i}")
            with pytest.raises(NotRunningError):
                await supervisor.stop(f"other-{i}")
            with pytest.raises(NotRunningError):
                await supervisor.send_command(f"other-{i}", "list")

        with pytest.raises(NotRunningError):
            await supervisor.stop("A")

        assert supervisor._slots == {}
        assert launcher.launches == []
