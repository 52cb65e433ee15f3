"""Fan-out of console events to live subscribers."""

import asyncio
from typing import TYPE_CHECKING, Any, Dict, Optional, Protocol, Set

import structlog
from prometheus_client import Gauge

from zyper_daemon.core.config import Settings
from zyper_daemon.core.exceptions import DaemonError, NotRunningError

from . import events

if TYPE_CHECKING:
    from zyper_daemon.supervisor.process_manager import ProcessSupervisor

logger = structlog.get_logger()

CONSOLE_SUBSCRIBERS = Gauge(
    "zyper_console_subscribers",
    "Connected console subscribers",
)


class Subscriber(Protocol):
    async def send(self, event: Dict[str, Any]) -> None: ...


class _Channel:
    """Outbound queue and sender task for one subscriber."""

    def __init__(self, subscriber: Subscriber, maxsize: int, hub: "ConsoleHub"):
        self.subscriber = subscriber
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.instances: Set[str] = set()
        self._hub = hub
        self.task = asyncio.create_task(self._pump())

    @property
    def label(self) -> str:
        return str(getattr(self.subscriber, "label", None) or id(self.subscriber))

    def offer(self, event: Dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            self._hub._drop(self, "queue full")
            return False
        return True

    async def _pump(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self.subscriber.send(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._hub._drop(self, f"send failed: {e}")
                return


class ConsoleHub:
    """Per-instance subscriber lists with isolated delivery.

    Each subscriber owns a bounded queue drained by its own task, so a slow
    or broken subscriber never delays the supervisor or other subscribers.
    A subscriber whose queue overflows or whose ``send`` raises is dropped
    from every instance it was watching.
    """

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or Settings()
        self.replay_count = settings.replay_count
        self.queue_size = settings.subscriber_queue_size
        self.supervisor: Optional["ProcessSupervisor"] = None
        self._rooms: Dict[str, Dict[Subscriber, None]] = {}
        self._channels: Dict[Subscriber, _Channel] = {}

    def bind(self, supervisor: "ProcessSupervisor") -> None:
        self.supervisor = supervisor

    def _channel(self, subscriber: Subscriber) -> _Channel:
        channel = self._channels.get(subscriber)
        if channel is None:
            channel = _Channel(subscriber, self.queue_size, self)
            self._channels[subscriber] = channel
            CONSOLE_SUBSCRIBERS.set(len(self._channels))
        return channel

    def subscriber_count(self, instance_id: str) -> int:
        return len(self._rooms.get(instance_id, {}))

    def is_subscribed(self, subscriber: Subscriber, instance_id: str) -> bool:
        return subscriber in self._rooms.get(instance_id, {})

    def subscribe(self, subscriber: Subscriber, instance_id: str) -> int:
        """Replay recent output, then register for live events.

        Runs without yielding to the event loop, so every record is either
        in the replay or delivered live, never both and never neither.
        Returns the number of records replayed.
        """
        channel = self._channel(subscriber)

        records = []
        running = False
        if self.supervisor is not None:
            records = self.supervisor.recent_output(instance_id, self.replay_count)
            running = self.supervisor.is_running(instance_id)

        for record in records:
            event = events.console_output(record.chunk, events.LOG, record.timestamp_ms, server_id=instance_id)
            if not channel.offer(event):
                return 0

        message = events.CONNECTED_MESSAGE if running else events.NOT_RUNNING_MESSAGE
        if not channel.offer(events.console_output(message, events.SYSTEM, server_id=instance_id)):
            return 0

        self._rooms.setdefault(instance_id, {})[subscriber] = None
        channel.instances.add(instance_id)
        logger.info(
            "Console subscriber joined",
            instance_id=instance_id,
            subscriber=channel.label,
            replayed=len(records),
        )
        return len(records)

    def publish(self, instance_id: str, event: Dict[str, Any]) -> None:
        room = self._rooms.get(instance_id)
        if not room:
            return
        for subscriber in list(room):
            channel = self._channels.get(subscriber)
            if channel is not None:
                channel.offer(event)

    def notify(self, subscriber: Subscriber, event: Dict[str, Any]) -> bool:
        """Queue an event for one subscriber only."""
        return self._channel(subscriber).offer(event)

    def unsubscribe(self, subscriber: Subscriber, instance_id: str) -> None:
        room = self._rooms.get(instance_id)
        if room is not None:
            room.pop(subscriber, None)
            if not room:
                del self._rooms[instance_id]
        channel = self._channels.get(subscriber)
        if channel is not None:
            channel.instances.discard(instance_id)

    def unsubscribe_all(self, subscriber: Subscriber) -> None:
        channel = self._channels.get(subscriber)
        if channel is None:
            return
        self._detach(channel)

    async def handle_command(self, subscriber: Subscriber, instance_id: str, text: str) -> bool:
        """Send ``text`` to the instance and echo it to every subscriber.

        On failure only the issuing subscriber is told. The echo is published
        before control returns to the event loop, so it precedes any output
        the command produces.
        """
        if self.supervisor is None:
            raise RuntimeError("ConsoleHub is not bound to a supervisor")

        channel = self._channel(subscriber)
        try:
            await self.supervisor.send_command(instance_id, text)
        except NotRunningError as e:
            logger.info("Command rejected", instance_id=instance_id, subscriber=channel.label, reason=e.message)
            failed = events.console_output(events.COMMAND_FAILED_MESSAGE, events.ERROR, server_id=instance_id)
            self.notify(subscriber, failed)
            return False
        except DaemonError as e:
            logger.warning("Command failed", instance_id=instance_id, subscriber=channel.label, error=e.message)
            self.notify(subscriber, events.console_output(f"❌ {e.message}\n", events.ERROR, server_id=instance_id))
            return False

        echo = events.console_output(f"> {text}\n", events.COMMAND, source=channel.label, server_id=instance_id)
        self.publish(instance_id, echo)
        logger.info("Console command", instance_id=instance_id, subscriber=channel.label, command=text)
        return True

    def _detach(self, channel: _Channel) -> None:
        for instance_id in list(channel.instances):
            room = self._rooms.get(instance_id)
            if room is not None:
                room.pop(channel.subscriber, None)
                if not room:
                    del self._rooms[instance_id]
        channel.instances.clear()
        self._channels.pop(channel.subscriber, None)
        if channel.task is not asyncio.current_task():
            channel.task.cancel()
        CONSOLE_SUBSCRIBERS.set(len(self._channels))

    def _drop(self, channel: _Channel, reason: str) -> None:
        if self._channels.get(channel.subscriber) is not channel:
            return
        logger.warning("Dropping console subscriber", subscriber=channel.label, reason=reason)
        self._detach(channel)

    async def close(self) -> None:
        channels = list(self._channels.values())
        for channel in channels:
            self._detach(channel)
        await asyncio.gather(*(channel.task for channel in channels), return_exceptions=True)
