"""Trace pipeline lifecycle.

One ``TelemetryLifecycle`` owns its own OpenTelemetry ``TracerProvider``; the
process-global provider is never touched, so tests can build isolated
instances side by side.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

import httpx
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import ReadableSpan, TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SpanExporter,
    SpanExportResult,
)
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased

from reqpulse.config import Settings, get_settings
from reqpulse.observability.errors import ExportError, ShutdownTimeoutError
from reqpulse.observability.outbound import TracingTransport


logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


def _split_host(entry: str) -> tuple[str, int | None]:
    host, sep, port = entry.rpartition(":")
    if sep and port.isdigit():
        return host.lower(), int(port)
    return entry.lower(), None


@dataclass(frozen=True)
class InstrumentationFilter:
    """Decides which inbound paths and outbound destinations get spans."""

    exclude_paths: frozenset[str] = field(default_factory=frozenset)
    exclude_hosts: frozenset[tuple[str, int | None]] = field(default_factory=frozenset)

    @classmethod
    def from_settings(cls, settings: Settings) -> "InstrumentationFilter":
        hosts = {_split_host(entry) for entry in settings.trace_exclude_hosts}
        # Never trace the calls that ship traces.
        endpoint = urlsplit(settings.exporter_endpoint)
        if endpoint.hostname:
            default_port = 443 if endpoint.scheme == "https" else 80
            hosts.add((endpoint.hostname.lower(), endpoint.port or default_port))
        return cls(exclude_paths=frozenset(settings.trace_exclude_paths), exclude_hosts=frozenset(hosts))

    def should_trace_path(self, path: str) -> bool:
        for excluded in self.exclude_paths:
            if path == excluded or path.startswith(excluded.rstrip("/") + "/"):
                return False
        return True

    def should_trace_destination(self, host: str, port: int | None) -> bool:
        host = host.lower()
        return (host, None) not in self.exclude_hosts and (host, port) not in self.exclude_hosts


class RetryOnceExporter(SpanExporter):
    """Retries a failed batch once after ``retry_delay`` seconds, then drops it."""

    def __init__(self, inner: SpanExporter, retry_delay: float = 1.0) -> None:
        self.inner = inner
        self._retry_delay = retry_delay
        self._closing = threading.Event()

    def _attempt(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        try:
            return self.inner.export(spans)
        except Exception:
            logger.exception("span export via %s raised", type(self.inner).__name__)
            return SpanExportResult.FAILURE

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        if self._attempt(spans) is SpanExportResult.SUCCESS:
            return SpanExportResult.SUCCESS
        # wait() returns True when shutdown interrupts the retry window.
        if not self._closing.wait(self._retry_delay):
            if self._attempt(spans) is SpanExportResult.SUCCESS:
                return SpanExportResult.SUCCESS
        error = ExportError(f"dropped batch of {len(spans)} spans for {type(self.inner).__name__}")
        logger.warning("%s", error)
        return SpanExportResult.FAILURE

    def shutdown(self) -> None:
        self._closing.set()
        self.inner.shutdown()

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        return self.inner.force_flush(timeout_millis)


def build_exporters(settings: Settings) -> list[SpanExporter]:
    exporters: list[SpanExporter] = []
    if settings.exporter_otlp_enabled:
        exporters.append(
            OTLPSpanExporter(
                endpoint=settings.exporter_endpoint,
                headers=dict(settings.exporter_headers),
                timeout=settings.export_timeout_ms / 1000.0,
            )
        )
    if settings.exporter_console_enabled:
        exporters.append(ConsoleSpanExporter())
    return exporters


def build_resource(settings: Settings) -> Resource:
    return Resource.create(
        {
            "service.name": settings.service_name,
            "service.version": settings.service_version,
            "service.namespace": settings.service_namespace,
            "service.instance.id": settings.service_instance_id,
            "deployment.environment": settings.environment,
        }
    )


class TelemetryLifecycle:
    """UNINITIALIZED -> INITIALIZING -> RUNNING -> DRAINING -> STOPPED."""

    def __init__(
        self,
        settings: Settings | None = None,
        exporter_factory: Callable[[Settings], Iterable[SpanExporter]] = build_exporters,
    ) -> None:
        self._default_settings = settings
        self._exporter_factory = exporter_factory
        # Re-entrant so a signal handler interrupting a locked section cannot deadlock.
        self._lock = threading.RLock()
        self._state = LifecycleState.UNINITIALIZED
        self._settings: Settings | None = None
        self._provider: TracerProvider | None = None
        self._exporters: tuple[RetryOnceExporter, ...] = ()
        self._filter = InstrumentationFilter()

    @property
    def state(self) -> LifecycleState:
        with self._lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state is LifecycleState.RUNNING

    @property
    def is_ready(self) -> bool:
        return self.state not in (LifecycleState.UNINITIALIZED, LifecycleState.INITIALIZING)

    @property
    def settings(self) -> Settings:
        with self._lock:
            if self._settings is not None:
                return self._settings
        return self._default_settings or get_settings()

    @property
    def filter(self) -> InstrumentationFilter:
        with self._lock:
            return self._filter

    @property
    def exporters(self) -> tuple[RetryOnceExporter, ...]:
        with self._lock:
            return self._exporters

    def initialize(self, settings: Settings | None = None, exporters: Iterable[SpanExporter] | None = None) -> None:
        with self._lock:
            if self._state is not LifecycleState.UNINITIALIZED:
                logger.warning("telemetry already initialized (state=%s); ignoring", self._state.value)
                return
            self._state = LifecycleState.INITIALIZING

            settings = settings or self._default_settings or get_settings()
            logger.info("initializing telemetry for service %s", settings.service_name)

            if exporters is None:
                try:
                    exporters = list(self._exporter_factory(settings))
                except Exception:
                    logger.exception("failed to build span exporters; continuing without trace export")
                    exporters = []

            provider = TracerProvider(
                resource=build_resource(settings),
                sampler=ParentBased(TraceIdRatioBased(settings.sampling_ratio)),
            )
            wrapped = tuple(RetryOnceExporter(e, retry_delay=settings.export_retry_delay_s) for e in exporters)
            for exporter in wrapped:
                provider.add_span_processor(
                    BatchSpanProcessor(
                        exporter,
                        max_queue_size=settings.max_queue_size,
                        schedule_delay_millis=settings.flush_interval_ms,
                        max_export_batch_size=settings.batch_size,
                        export_timeout_millis=settings.export_timeout_ms,
                    )
                )

            self._settings = settings
            self._provider = provider
            self._exporters = wrapped
            self._filter = InstrumentationFilter.from_settings(settings)

            if self._state is LifecycleState.STOPPED:
                # shutdown() ran from a signal handler while we were building.
                provider.shutdown()
                return
            self._state = LifecycleState.RUNNING
            logger.info("telemetry running with %d exporter(s)", len(wrapped))

    def shutdown(self, timeout: float | None = None) -> bool:
        """Drain and stop the pipeline. Returns False if draining timed out.

        Always ends in STOPPED, even when exporters never answer.
        """

        with self._lock:
            if self._state in (LifecycleState.DRAINING, LifecycleState.STOPPED):
                return True
            if self._state is not LifecycleState.RUNNING:
                self._state = LifecycleState.STOPPED
                return True
            self._state = LifecycleState.DRAINING
            provider = self._provider
            settings = self._settings

        if timeout is None:
            timeout = settings.shutdown_timeout_s if settings else 10.0
        done = threading.Event()

        def drain() -> None:
            try:
                if provider is not None:
                    provider.force_flush(timeout_millis=int(timeout * 1000))
                    provider.shutdown()
            except Exception:
                logger.exception("error while draining telemetry")
            finally:
                done.set()

        threading.Thread(target=drain, name="reqpulse-telemetry-drain", daemon=True).start()
        completed = done.wait(timeout)

        with self._lock:
            self._state = LifecycleState.STOPPED
        if completed:
            logger.info("telemetry shut down")
        else:
            logger.error("%s", ShutdownTimeoutError(f"telemetry drain exceeded {timeout:.2f}s; pending spans abandoned"))
        return completed

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        with self._lock:
            provider = self._provider if self._state is LifecycleState.RUNNING else None
        if provider is None:
            return False
        return provider.force_flush(timeout_millis)

    def get_emitter(self, name: str, version: str | None = None) -> trace.Tracer:
        if self.state is LifecycleState.UNINITIALIZED:
            logger.warning("telemetry not initialized, initializing with defaults")
            self.initialize()
        with self._lock:
            provider = self._provider if self._state is LifecycleState.RUNNING else None
            settings = self._settings
        if provider is None:
            return trace.NoOpTracer()
        return provider.get_tracer(name, version or (settings.service_version if settings else None))

    def instrument_client(self, transport: httpx.AsyncBaseTransport | None = None, **kwargs: Any) -> httpx.AsyncClient:
        """An ``httpx.AsyncClient`` whose requests open CLIENT spans."""

        inner = transport or httpx.AsyncHTTPTransport()
        return httpx.AsyncClient(transport=TracingTransport(inner, self), **kwargs)
