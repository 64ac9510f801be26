from __future__ import annotations

import asyncio
import uuid
from collections.abc import Iterable
from contextlib import nullcontext
from threading import Lock
from time import perf_counter
from typing import Any, Callable

import structlog
from opentelemetry.trace import SpanKind, Status, StatusCode
from starlette.datastructures import MutableHeaders

from reqpulse.observability.lifecycle import TelemetryLifecycle
from reqpulse.observability.metrics import DEFAULT_BUCKETS, MetricDescriptor, MetricRegistry
from reqpulse.observability.traces import TraceBuffer, TraceRecord


HTTP_REQUESTS_TOTAL = "http_requests_total"
HTTP_REQUEST_DURATION = "http_request_duration_seconds"
HTTP_ACTIVE_CONNECTIONS = "http_active_connections"
HTTP_LABELS = ("method", "route", "status_code")

UNMATCHED_ROUTE = "<unmatched>"
CLIENT_CLOSED_REQUEST = 499


def register_http_metrics(registry: MetricRegistry, buckets: Iterable[float] = DEFAULT_BUCKETS) -> None:
    registry.register(MetricDescriptor.counter(HTTP_REQUESTS_TOTAL, "Total number of HTTP requests", HTTP_LABELS))
    registry.register(
        MetricDescriptor.histogram(
            HTTP_REQUEST_DURATION, "Duration of HTTP requests in seconds", HTTP_LABELS, buckets=buckets
        )
    )
    registry.register(MetricDescriptor.gauge(HTTP_ACTIVE_CONNECTIONS, "Number of active HTTP connections"))


class InstrumentationMiddleware:
    """Measures every HTTP request: in-flight gauge, counter, duration histogram, trace record.

    The bookkeeping sits in a ``finally`` block so it runs exactly once whether
    the app returns, raises, or is cancelled by a client disconnect.
    """

    def __init__(
        self,
        app: Callable[..., Any],
        registry: MetricRegistry,
        traces: TraceBuffer,
        lifecycle: TelemetryLifecycle | None = None,
        exclude_paths: Iterable[str] = ("/metrics",),
        route_label_limit: int = 100,
    ) -> None:
        self.app = app
        self._registry = registry
        self._traces = traces
        self._lifecycle = lifecycle
        # Avoid self-observing the observability endpoints.
        self._excluded_metric_paths = set(exclude_paths)
        self._route_label_limit = route_label_limit
        self._unmatched_paths: set[str] = set()
        self._unmatched_lock = Lock()
        register_http_metrics(registry)

    def _route_label(self, scope: dict[str, Any], path: str) -> str:
        template = getattr(scope.get("route"), "path", None)
        if template:
            return template
        # Raw paths keep their own label only up to the limit.
        with self._unmatched_lock:
            if path in self._unmatched_paths:
                return path
            if len(self._unmatched_paths) < self._route_label_limit:
                self._unmatched_paths.add(path)
                return path
        return UNMATCHED_ROUTE

    def _span(self, method: str, path: str) -> Any:
        lifecycle = self._lifecycle
        if lifecycle is None or not lifecycle.is_running:
            return nullcontext()
        if not lifecycle.settings.instrument_http_server or not lifecycle.filter.should_trace_path(path):
            return nullcontext()
        tracer = lifecycle.get_emitter("reqpulse.http")
        return tracer.start_as_current_span(
            f"{method} {path}",
            kind=SpanKind.SERVER,
            attributes={"http.method": method, "http.target": path},
        )

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = str(uuid.uuid4())
        path = scope.get("path") or "/"
        method = scope.get("method") or "GET"
        recorded = path not in self._excluded_metric_paths

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=path,
            method=method,
        )

        if recorded:
            self._registry.increment(HTTP_ACTIVE_CONNECTIONS)
        start = perf_counter()
        status_code: int = 500
        response_started = False
        trace_id = uuid.uuid4().hex

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code, response_started

            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 500))
                response_started = True
                headers = MutableHeaders(scope=message)
                headers["X-Request-ID"] = request_id

            await send(message)

        try:
            with self._span(method, path) as span:
                if span is not None and span.get_span_context().is_valid:
                    trace_id = format(span.get_span_context().trace_id, "032x")
                try:
                    await self.app(scope, receive, send_wrapper)
                except asyncio.CancelledError:
                    if not response_started:
                        status_code = CLIENT_CLOSED_REQUEST
                    raise
                finally:
                    if span is not None:
                        span.update_name(f"{method} {self._route_label(scope, path)}")
                        span.set_attribute("http.status_code", status_code)
                        if status_code >= 500:
                            span.set_status(Status(StatusCode.ERROR))
        finally:
            elapsed = perf_counter() - start
            route = self._route_label(scope, path)

            # Update metrics first so they update even if logging misbehaves.
            if recorded:
                labels = {"method": method, "route": route, "status_code": str(status_code)}
                self._registry.decrement(HTTP_ACTIVE_CONNECTIONS)
                self._registry.increment(HTTP_REQUESTS_TOTAL, labels)
                self._registry.observe(HTTP_REQUEST_DURATION, labels, elapsed)
                self._traces.append(
                    TraceRecord(
                        operation=f"{method} {route}",
                        duration_ms=round(elapsed * 1000.0, 3),
                        status_code=status_code,
                        trace_id=trace_id,
                    )
                )

            structlog.get_logger("access").info(
                "http_request",
                route=route,
                status_code=status_code,
                elapsed_ms=round(elapsed * 1000.0, 2),
                trace_id=trace_id,
            )

            structlog.contextvars.clear_contextvars()
