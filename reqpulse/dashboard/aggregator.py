"""Client-side folding of broadcast snapshots into fixed-size chart series.

Series are reconciled by key (timestamp or minute bucket), never by position,
so duplicated or out-of-order pushes cannot shift bucket boundaries.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal

from reqpulse.observability.broadcaster import METRICS_EVENT, TRACES_EVENT


logger = logging.getLogger(__name__)

DuplicatePolicy = Literal["ignore", "overwrite", "accumulate"]


@dataclass(frozen=True)
class SeriesPoint:
    key: float
    label: str
    value: float


class RollingSeries:
    """Key-ordered series holding at most ``capacity`` points; the oldest key is evicted first."""

    def __init__(self, capacity: int, on_duplicate: DuplicatePolicy = "ignore") -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self.on_duplicate = on_duplicate
        self._points: deque[SeriesPoint] = deque()

    def push(self, key: float, value: float, label: str | None = None) -> bool:
        """Fold one value in. Returns False when the push was discarded."""

        label = label if label is not None else str(key)
        pos = len(self._points)
        while pos > 0 and self._points[pos - 1].key > key:
            pos -= 1

        if pos > 0 and self._points[pos - 1].key == key:
            current = self._points[pos - 1]
            if self.on_duplicate == "ignore":
                return False
            merged = current.value + value if self.on_duplicate == "accumulate" else value
            self._points[pos - 1] = SeriesPoint(key=key, label=current.label, value=merged)
            return True

        if pos == 0 and len(self._points) >= self.capacity:
            # Older than everything in a full series.
            return False

        self._points.insert(pos, SeriesPoint(key=key, label=label, value=value))
        while len(self._points) > self.capacity:
            self._points.popleft()
        return True

    @property
    def labels(self) -> list[str]:
        return [p.label for p in self._points]

    @property
    def values(self) -> list[float]:
        return [p.value for p in self._points]

    @property
    def points(self) -> list[SeriesPoint]:
        return list(self._points)

    def __len__(self) -> int:
        return len(self._points)


def _clock_label(timestamp: float, fmt: str) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime(fmt)


class ClientAggregator:
    """Rolling windows a dashboard draws from: per-sample durations and per-minute volume."""

    def __init__(
        self,
        duration_capacity: int = 20,
        volume_capacity: int = 10,
        bucket_seconds: int = 60,
        volume_policy: DuplicatePolicy = "overwrite",
        duration_field: str = "avg_response_time_ms",
        volume_field: str = "requests_per_min",
    ) -> None:
        self.duration = RollingSeries(duration_capacity, on_duplicate="ignore")
        self.volume = RollingSeries(volume_capacity, on_duplicate=volume_policy)
        self.bucket_seconds = bucket_seconds
        self.duration_field = duration_field
        self.volume_field = volume_field
        self.latest: dict[str, Any] = {}
        self.traces: list[dict[str, Any]] = []

    def bucket_key(self, timestamp: float) -> int:
        return int(timestamp // self.bucket_seconds)

    def ingest_metrics(self, payload: Mapping[str, Any]) -> None:
        try:
            timestamp = float(payload["timestamp"])
        except (KeyError, TypeError, ValueError):
            logger.warning("metrics push without a usable timestamp ignored")
            return

        if timestamp >= float(self.latest.get("timestamp", float("-inf"))):
            self.latest = dict(payload)

        duration = payload.get(self.duration_field)
        if isinstance(duration, (int, float)):
            self.duration.push(timestamp, float(duration), _clock_label(timestamp, "%H:%M:%S"))

        volume = payload.get(self.volume_field)
        if isinstance(volume, (int, float)):
            bucket = self.bucket_key(timestamp)
            self.volume.push(bucket, float(volume), _clock_label(bucket * self.bucket_seconds, "%H:%M"))

    def ingest_traces(self, records: Iterable[Mapping[str, Any]]) -> None:
        self.traces = [dict(r) for r in records]

    def ingest(self, event: str, data: Any) -> None:
        if event == METRICS_EVENT:
            self.ingest_metrics(data)
        elif event == TRACES_EVENT:
            self.ingest_traces(data)
        else:
            logger.debug("ignoring unknown dashboard event %r", event)
