"""Periodic fan-out of registry snapshots to live subscribers.

Every subscriber gets its own bounded queue and pump task, so a slow or dead
subscriber only ever loses its own (oldest) messages.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Protocol

from reqpulse.observability.metrics import MetricRegistry
from reqpulse.observability.middleware import (
    HTTP_ACTIVE_CONNECTIONS,
    HTTP_REQUEST_DURATION,
    HTTP_REQUESTS_TOTAL,
)
from reqpulse.observability.snapshot import Snapshot
from reqpulse.observability.traces import TraceBuffer


logger = logging.getLogger(__name__)

METRICS_EVENT = "metrics"
TRACES_EVENT = "traces"


class Subscriber(Protocol):
    id: str

    async def send(self, event: str, data: Any) -> None: ...


class SnapshotSource(Protocol):
    def snapshot(self) -> Snapshot: ...


class RegistrySnapshotSource:
    """Production source: the registry plus the most recent trace records."""

    def __init__(self, registry: MetricRegistry, traces: TraceBuffer, trace_limit: int = 20) -> None:
        self._registry = registry
        self._traces = traces
        self._trace_limit = trace_limit

    def snapshot(self) -> Snapshot:
        return self._registry.snapshot(traces=self._traces.recent(self._trace_limit))


class RequestRateTracker:
    """Requests-per-minute from the growth of the request counter over the last 60 seconds."""

    def __init__(self, window_s: float = 60.0) -> None:
        self._window_s = window_s
        self._points: deque[tuple[float, float]] = deque()

    def update(self, timestamp: float, total: float) -> float:
        self._points.append((timestamp, total))
        while len(self._points) > 1 and timestamp - self._points[0][0] > self._window_s:
            self._points.popleft()
        oldest_ts, oldest_total = self._points[0]
        if timestamp <= oldest_ts:
            return 0.0
        return max(0.0, total - oldest_total)


def summarize(snapshot: Snapshot, requests_per_min: float = 0.0, error_status: int = 400) -> dict[str, Any]:
    """Dashboard-level figures derived from the standard HTTP metrics.

    ``error_rate`` is the percentage of requests answered with ``error_status`` or above.
    """

    total = 0.0
    errors = 0.0
    for sample in snapshot.scalars:
        if sample.name != HTTP_REQUESTS_TOTAL:
            continue
        total += sample.value
        status = dict(sample.labels).get("status_code", "")
        if status.isdigit() and int(status) >= error_status:
            errors += sample.value

    duration_sum = 0.0
    duration_count = 0
    for dist in snapshot.distributions_named(HTTP_REQUEST_DURATION):
        duration_sum += dist.sum
        duration_count += dist.count

    return {
        "timestamp": snapshot.timestamp,
        "total_requests": int(total),
        "avg_response_time_ms": round(duration_sum / duration_count * 1000.0, 3) if duration_count else 0.0,
        "error_rate": round(errors / total * 100.0, 3) if total else 0.0,
        "requests_per_min": round(requests_per_min, 3),
        "active_connections": snapshot.total(HTTP_ACTIVE_CONNECTIONS),
    }


@dataclass
class _Subscription:
    subscriber: Subscriber
    queue: asyncio.Queue
    task: asyncio.Task | None = None
    dropped: int = field(default=0)


class SnapshotBroadcaster:
    def __init__(
        self,
        source: SnapshotSource,
        interval: float = 5.0,
        queue_size: int = 8,
        send_timeout: float = 2.0,
        error_status: int = 400,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        if queue_size < 2:
            raise ValueError("queue_size must hold at least one metrics and one traces event")
        self._source = source
        self.interval = interval
        self._queue_size = queue_size
        self._send_timeout = send_timeout
        self.error_status = error_status
        self._subscriptions: dict[str, _Subscription] = {}
        self._rate = RequestRateTracker()
        self._tick_task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._tick_task is not None and not self._tick_task.done()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def build_events(self) -> list[tuple[str, Any]]:
        snapshot = self._source.snapshot()
        total = sum(s.value for s in snapshot.scalars if s.name == HTTP_REQUESTS_TOTAL)
        rpm = self._rate.update(snapshot.timestamp, total)
        metrics = summarize(snapshot, requests_per_min=rpm, error_status=self.error_status)
        metrics["scalars"] = [s.to_dict() for s in snapshot.scalars]
        metrics["distributions"] = [d.to_dict() for d in snapshot.distributions]
        return [
            (METRICS_EVENT, metrics),
            (TRACES_EVENT, [t.to_dict() for t in snapshot.traces]),
        ]

    async def start(self) -> None:
        if self.running:
            return
        self._tick_task = asyncio.create_task(self._tick_loop(), name="reqpulse-broadcast-tick")

    async def stop(self) -> None:
        tasks = []
        if self._tick_task is not None:
            self._tick_task.cancel()
            tasks.append(self._tick_task)
            self._tick_task = None
        for sub in list(self._subscriptions.values()):
            if sub.task is not None:
                sub.task.cancel()
                tasks.append(sub.task)
        self._subscriptions.clear()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.broadcast_now()
            except Exception:
                logger.exception("snapshot broadcast failed")

    def broadcast_now(self) -> None:
        if not self._subscriptions:
            return
        events = self.build_events()
        for sub in list(self._subscriptions.values()):
            for event in events:
                self._enqueue(sub, event)

    def subscribe(self, subscriber: Subscriber) -> None:
        """Register a subscriber and queue an immediate snapshot for it.

        Re-subscribing an id replaces the earlier registration and its pump.
        """

        self.unsubscribe(subscriber)
        sub = _Subscription(subscriber=subscriber, queue=asyncio.Queue(maxsize=self._queue_size))
        self._subscriptions[subscriber.id] = sub
        sub.task = asyncio.create_task(self._pump(sub), name=f"reqpulse-subscriber-{subscriber.id}")
        try:
            for event in self.build_events():
                self._enqueue(sub, event)
        except Exception:
            logger.exception("initial snapshot for subscriber %s failed", subscriber.id)
        logger.info("dashboard subscriber connected: %s", subscriber.id)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        sub = self._subscriptions.pop(subscriber.id, None)
        if sub is None:
            return
        if sub.task is not None and sub.task is not asyncio.current_task():
            sub.task.cancel()
        logger.info("dashboard subscriber disconnected: %s", subscriber.id)

    def _enqueue(self, sub: _Subscription, event: tuple[str, Any]) -> None:
        if sub.queue.full():
            # Slow subscriber: drop its oldest pending message.
            sub.queue.get_nowait()
            sub.dropped += 1
        sub.queue.put_nowait(event)

    async def _pump(self, sub: _Subscription) -> None:
        while True:
            event, data = await sub.queue.get()
            try:
                await asyncio.wait_for(sub.subscriber.send(event, data), timeout=self._send_timeout)
            except Exception as exc:
                logger.warning("dropping subscriber %s after failed send: %r", sub.subscriber.id, exc)
                self.unsubscribe(sub.subscriber)
                return


class WebSocketSubscriber:
    """Adapts a Starlette/FastAPI ``WebSocket`` to the Subscriber protocol."""

    def __init__(self, websocket: Any) -> None:
        self.id = uuid.uuid4().hex
        self.websocket = websocket

    async def send(self, event: str, data: Any) -> None:
        await self.websocket.send_json({"event": event, "data": data})


class CallbackSubscriber:
    """Subscriber that hands events to an async callback (in-process consumers, tests)."""

    def __init__(self, callback: Any, subscriber_id: str | None = None) -> None:
        self.id = subscriber_id or uuid.uuid4().hex
        self._callback = callback

    async def send(self, event: str, data: Any) -> None:
        await self._callback(event, data)
