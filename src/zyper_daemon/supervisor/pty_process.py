"""Interactive child processes on a pseudo-terminal."""

import asyncio
import codecs
import fcntl
import os
import pty
import struct
import termios
from typing import Callable, Optional

import structlog

from zyper_daemon.core.exceptions import LaunchError, NotRunningError

from .models import ExitStatus, LaunchSpec
from .resource_manager import ResourceManager

logger = structlog.get_logger()

READ_SIZE = 4096

OutputCallback = Callable[[str], None]
ExitCallback = Callable[[ExitStatus], None]


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class PtyProcess:
    """A process whose stdin/stdout/stderr are one pseudo-terminal.

    Output is read with ``loop.add_reader`` on the master side and handed to
    ``on_output`` as decoded text. When the process exits, whatever is still
    buffered in the terminal is drained before ``on_exit`` fires, so the exit
    callback always follows the last output callback.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        master_fd: int,
        on_output: OutputCallback,
        on_exit: ExitCallback,
    ):
        self._proc = proc
        self.pid = proc.pid
        self._master_fd: Optional[int] = master_fd
        self._on_output = on_output
        self._on_exit = on_exit
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._loop = asyncio.get_running_loop()
        self._status: Optional[ExitStatus] = None
        self._exited = asyncio.Event()
        self._stop_requested = False

        os.set_blocking(master_fd, False)
        self._loop.add_reader(master_fd, self._on_readable)
        self._watcher = asyncio.create_task(self._watch(), name=f"pty-watch-{self.pid}")

    @classmethod
    async def spawn(cls, spec: LaunchSpec, on_output: OutputCallback, on_exit: ExitCallback) -> "PtyProcess":
        if not os.path.isdir(spec.cwd):
            raise LaunchError(f"Server directory does not exist: {spec.cwd}", code="bad_directory")

        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(slave_fd, spec.rows, spec.cols)
        except OSError:
            pass

        try:
            proc = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=spec.cwd,
                env=spec.env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
            )
        except OSError as e:
            os.close(master_fd)
            raise LaunchError(f"Failed to launch {spec.argv[0]}: {e}", code="spawn_failed") from e
        finally:
            os.close(slave_fd)

        logger.info("Spawned pty process", instance_id=spec.instance_id, pid=proc.pid, argv=spec.argv)
        return cls(proc, master_fd, on_output, on_exit)

    def _on_readable(self) -> None:
        fd = self._master_fd
        if fd is None:
            return
        try:
            data = os.read(fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # EIO once every slave descriptor is closed
            data = b""
        if not data:
            self._close_master()
            return
        self._emit(data)

    def _emit(self, data: bytes) -> None:
        text = self._decoder.decode(data)
        if text:
            self._on_output(text)

    def _drain(self) -> None:
        fd = self._master_fd
        while fd is not None:
            try:
                data = os.read(fd, READ_SIZE)
            except OSError:
                break
            if not data:
                break
            self._emit(data)
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._on_output(tail)

    def _close_master(self) -> None:
        fd = self._master_fd
        if fd is None:
            return
        self._master_fd = None
        self._loop.remove_reader(fd)
        try:
            os.close(fd)
        except OSError:
            pass

    async def _watch(self) -> None:
        returncode = await self._proc.wait()
        self._drain()
        self._close_master()
        self._status = ExitStatus.from_returncode(returncode, stop_requested=self._stop_requested)
        self._exited.set()
        logger.info("Pty process exited", pid=self.pid, returncode=returncode)
        self._on_exit(self._status)

    def write(self, data: bytes) -> None:
        fd = self._master_fd
        if fd is None:
            raise NotRunningError("Console stream is closed", code="stream_closed")
        view = memoryview(data)
        while view:
            try:
                written = os.write(fd, view)
            except BlockingIOError:
                raise NotRunningError("Console input buffer is full", code="stream_full")
            except OSError as e:
                raise NotRunningError(f"Console stream is closed: {e}", code="stream_closed") from e
            view = view[written:]

    def send_signal(self, sig: int) -> None:
        self._stop_requested = True
        ResourceManager.signal_tree(self.pid, sig)

    async def wait(self) -> ExitStatus:
        await self._exited.wait()
        return self._status


class PtyLauncher:
    """Creates PtyProcess handles for the supervisor."""

    async def launch(self, spec: LaunchSpec, on_output: OutputCallback, on_exit: ExitCallback) -> PtyProcess:
        return await PtyProcess.spawn(spec, on_output, on_exit)
