from __future__ import annotations

import time
from collections import deque
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any


@dataclass(frozen=True)
class TraceRecord:
    operation: str
    duration_ms: float
    status_code: int
    trace_id: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TraceBuffer:
    """Fixed-capacity ring of recent TraceRecords; the oldest is evicted first."""

    def __init__(self, capacity: int = 100) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._lock = Lock()
        self._records: deque[TraceRecord] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._records.maxlen or 0

    def append(self, record: TraceRecord) -> None:
        with self._lock:
            self._records.append(record)

    def recent(self, limit: int | None = None) -> tuple[TraceRecord, ...]:
        """Newest-last copy of at most ``limit`` records."""

        with self._lock:
            records = tuple(self._records)
        if limit is None:
            return records
        if limit <= 0:
            return ()
        return records[-limit:]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
