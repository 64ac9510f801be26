from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from opentelemetry.sdk.trace.export import SpanExporter

from reqpulse.config import Settings
from reqpulse.observability.broadcaster import RegistrySnapshotSource, SnapshotBroadcaster
from reqpulse.observability.lifecycle import TelemetryLifecycle
from reqpulse.observability.metrics import MetricRegistry
from reqpulse.observability.middleware import register_http_metrics
from reqpulse.observability.process import register_app_info, register_process_metrics
from reqpulse.observability.traces import TraceBuffer


@dataclass
class Observability:
    """Everything the service emits through, built once per application instance."""

    settings: Settings
    registry: MetricRegistry
    traces: TraceBuffer
    lifecycle: TelemetryLifecycle
    broadcaster: SnapshotBroadcaster
    exporters: list[SpanExporter] | None = None
    metrics_path: str = "/metrics"
    health_path: str = "/health"
    started_at: float = field(default_factory=time.time)

    @classmethod
    def from_settings(cls, settings: Settings, exporters: Iterable[SpanExporter] | None = None) -> "Observability":
        registry = MetricRegistry()
        register_http_metrics(registry)
        register_app_info(registry, settings.service_name, settings.service_version, settings.environment)
        if settings.enable_process_metrics:
            register_process_metrics(registry)

        traces = TraceBuffer(settings.trace_buffer_size)
        broadcaster = SnapshotBroadcaster(
            RegistrySnapshotSource(registry, traces, trace_limit=settings.broadcast_trace_limit),
            interval=settings.broadcast_interval_s,
            queue_size=settings.subscriber_queue_size,
            send_timeout=settings.subscriber_send_timeout_s,
            error_status=settings.dashboard_error_status,
        )
        return cls(
            settings=settings,
            registry=registry,
            traces=traces,
            lifecycle=TelemetryLifecycle(settings),
            broadcaster=broadcaster,
            exporters=list(exporters) if exporters is not None else None,
        )

    @property
    def uptime_s(self) -> float:
        return time.time() - self.started_at

    async def start(self) -> None:
        self.lifecycle.initialize(self.settings, exporters=self.exporters)
        await self.broadcaster.start()

    async def shutdown(self, timeout: float | None = None) -> bool:
        """Stop fan-out, then drain the trace pipeline within ``timeout`` seconds."""

        await self.broadcaster.stop()
        if timeout is None:
            timeout = self.settings.shutdown_timeout_s
        return await asyncio.to_thread(self.lifecycle.shutdown, timeout)
