"""Bounded console output buffer for a running instance."""

import time
from collections import deque
from datetime import datetime, timezone
from typing import Deque, Dict, Iterator, List, Optional

DEFAULT_CAPACITY = 1000


class OutputRecord:
    """One chunk of console output as it was read from the terminal."""

    __slots__ = ("timestamp", "chunk")

    def __init__(self, timestamp: float, chunk: str):
        self.timestamp = timestamp
        self.chunk = chunk

    @property
    def timestamp_ms(self) -> int:
        return int(self.timestamp * 1000)

    def to_dict(self) -> Dict:
        return {
            "timestamp": self.timestamp_ms,
            "time": datetime.fromtimestamp(self.timestamp, tz=timezone.utc).isoformat(),
            "data": self.chunk,
        }

    def __repr__(self) -> str:
        return f"OutputRecord({self.timestamp!r}, {self.chunk!r})"


class ConsoleBuffer:
    """Fixed-capacity FIFO of output records.

    Eviction is by record count, oldest first, regardless of chunk size.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._records: Deque[OutputRecord] = deque(maxlen=capacity)
        self.total_appended = 0

    def append(self, chunk: str, timestamp: Optional[float] = None) -> OutputRecord:
        record = OutputRecord(time.time() if timestamp is None else timestamp, chunk)
        self._records.append(record)
        self.total_appended += 1
        return record

    def tail(self, count: int) -> List[OutputRecord]:
        """Return up to ``count`` most recent records, oldest first."""
        if count <= 0:
            return []
        if count >= len(self._records):
            return list(self._records)
        return list(self._records)[-count:]

    def text(self, count: Optional[int] = None) -> str:
        records = list(self._records) if count is None else self.tail(count)
        return "".join(record.chunk for record in records)

    @property
    def evicted(self) -> int:
        return self.total_appended - len(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[OutputRecord]:
        return iter(list(self._records))
