from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
from opentelemetry.trace import SpanKind, Status, StatusCode

if TYPE_CHECKING:
    from reqpulse.observability.lifecycle import TelemetryLifecycle


class TracingTransport(httpx.AsyncBaseTransport):
    """Wraps an httpx transport with one CLIENT span per outbound request."""

    def __init__(self, inner: httpx.AsyncBaseTransport, lifecycle: "TelemetryLifecycle") -> None:
        self._inner = inner
        self._lifecycle = lifecycle

    def _should_trace(self, request: httpx.Request) -> bool:
        if not self._lifecycle.is_running or not self._lifecycle.settings.instrument_http_client:
            return False
        port = request.url.port or (443 if request.url.scheme == "https" else 80)
        return self._lifecycle.filter.should_trace_destination(request.url.host, port)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if not self._should_trace(request):
            return await self._inner.handle_async_request(request)

        tracer = self._lifecycle.get_emitter("reqpulse.httpx")
        with tracer.start_as_current_span(
            f"HTTP {request.method}",
            kind=SpanKind.CLIENT,
            attributes={
                "http.method": request.method,
                "http.url": str(request.url),
                "server.address": request.url.host,
            },
        ) as span:
            response = await self._inner.handle_async_request(request)
            span.set_attribute("http.status_code", response.status_code)
            if response.status_code >= 500:
                span.set_status(Status(StatusCode.ERROR))
            return response

    async def aclose(self) -> None:
        await self._inner.aclose()
