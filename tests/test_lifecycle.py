import logging
import threading
import time

import httpx
import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from reqpulse.config import Settings
from reqpulse.observability.lifecycle import (
    InstrumentationFilter,
    LifecycleState,
    RetryOnceExporter,
    TelemetryLifecycle,
    build_exporters,
)
from reqpulse.observability.logging import add_trace_context


class HangingExporter(SpanExporter):
    """Never acknowledges a batch until released."""

    def __init__(self) -> None:
        self.release = threading.Event()

    def export(self, spans):
        self.release.wait()
        return SpanExportResult.SUCCESS

    def shutdown(self) -> None:
        self.release.wait()


class FlakyExporter(SpanExporter):
    def __init__(self, outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    def export(self, spans):
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def shutdown(self) -> None:
        pass


def test_initialize_twice_is_a_noop(settings: Settings, caplog: pytest.LogCaptureFixture) -> None:
    exporter = InMemorySpanExporter()
    lifecycle = TelemetryLifecycle(settings)
    lifecycle.initialize(exporters=[exporter])
    first_exporters = lifecycle.exporters
    first = lifecycle.get_emitter("test")

    with caplog.at_level(logging.WARNING, logger="reqpulse.observability.lifecycle"):
        lifecycle.initialize(exporters=[exporter, InMemorySpanExporter()])

    assert lifecycle.state is LifecycleState.RUNNING
    assert lifecycle.exporters == first_exporters
    assert len(lifecycle.exporters) == 1
    assert "already initialized" in caplog.text

    second = lifecycle.get_emitter("test")
    for tracer in (first, second):
        with tracer.start_as_current_span("work") as span:
            assert span.is_recording()

    assert lifecycle.force_flush(2000)
    assert [s.name for s in exporter.get_finished_spans()] == ["work", "work"]
    lifecycle.shutdown(2.0)


def test_get_emitter_initializes_lazily(settings: Settings) -> None:
    exporter = InMemorySpanExporter()
    lifecycle = TelemetryLifecycle(settings, exporter_factory=lambda _settings: [exporter])
    assert lifecycle.state is LifecycleState.UNINITIALIZED
    assert not lifecycle.is_ready

    tracer = lifecycle.get_emitter("lazy")

    assert lifecycle.state is LifecycleState.RUNNING
    assert lifecycle.is_ready
    with tracer.start_as_current_span("lazy-span"):
        pass
    lifecycle.shutdown(2.0)
    assert [s.name for s in exporter.get_finished_spans()] == ["lazy-span"]


def test_resource_describes_the_service(settings: Settings) -> None:
    exporter = InMemorySpanExporter()
    lifecycle = TelemetryLifecycle(settings)
    lifecycle.initialize(exporters=[exporter])
    with lifecycle.get_emitter("res").start_as_current_span("s"):
        pass
    lifecycle.shutdown(2.0)

    attributes = exporter.get_finished_spans()[0].resource.attributes
    assert attributes["service.name"] == "reqpulse-test"
    assert attributes["service.version"] == settings.service_version
    assert attributes["service.namespace"] == settings.service_namespace
    assert attributes["service.instance.id"] == "test-instance"
    assert attributes["deployment.environment"] == settings.environment


def test_lifecycle_uses_its_own_provider(settings: Settings) -> None:
    global_provider = trace.get_tracer_provider()
    lifecycle = TelemetryLifecycle(settings)
    lifecycle.initialize(exporters=[])
    assert trace.get_tracer_provider() is global_provider
    lifecycle.shutdown(1.0)


def test_shutdown_completes_within_timeout_when_exporter_hangs(settings: Settings) -> None:
    exporter = HangingExporter()
    lifecycle = TelemetryLifecycle(settings)
    lifecycle.initialize(exporters=[exporter])
    with lifecycle.get_emitter("hang").start_as_current_span("stuck"):
        pass

    timeout = 0.3
    start = time.monotonic()
    try:
        completed = lifecycle.shutdown(timeout)
        elapsed = time.monotonic() - start
    finally:
        exporter.release.set()

    assert completed is False
    assert lifecycle.state is LifecycleState.STOPPED
    assert elapsed < timeout + 0.5


def test_shutdown_is_idempotent_and_emitter_becomes_noop(settings: Settings) -> None:
    lifecycle = TelemetryLifecycle(settings)
    lifecycle.initialize(exporters=[InMemorySpanExporter()])

    assert lifecycle.shutdown(2.0) is True
    assert lifecycle.shutdown(2.0) is True
    assert lifecycle.state is LifecycleState.STOPPED
    assert lifecycle.is_ready
    assert isinstance(lifecycle.get_emitter("after"), trace.NoOpTracer)
    assert lifecycle.force_flush() is False

    # Stopped is terminal.
    lifecycle.initialize(exporters=[InMemorySpanExporter()])
    assert lifecycle.state is LifecycleState.STOPPED


def test_shutdown_before_initialize_goes_straight_to_stopped(settings: Settings) -> None:
    lifecycle = TelemetryLifecycle(settings)
    assert lifecycle.shutdown() is True
    assert lifecycle.state is LifecycleState.STOPPED


def test_exporter_factory_failure_keeps_app_running(settings: Settings, caplog: pytest.LogCaptureFixture) -> None:
    def broken(_settings: Settings):
        raise RuntimeError("collector misconfigured")

    lifecycle = TelemetryLifecycle(settings, exporter_factory=broken)
    with caplog.at_level(logging.ERROR, logger="reqpulse.observability.lifecycle"):
        lifecycle.initialize()

    assert lifecycle.state is LifecycleState.RUNNING
    assert lifecycle.exporters == ()
    assert "failed to build span exporters" in caplog.text
    lifecycle.shutdown(1.0)


def test_build_exporters_respects_settings() -> None:
    assert build_exporters(Settings(exporter_otlp_enabled=False, exporter_console_enabled=False)) == []

    exporters = build_exporters(Settings(exporter_otlp_enabled=True, exporter_console_enabled=True))
    assert [type(e).__name__ for e in exporters] == ["OTLPSpanExporter", "ConsoleSpanExporter"]


def test_retry_once_exporter_retries_a_failed_batch() -> None:
    inner = FlakyExporter([SpanExportResult.FAILURE, SpanExportResult.SUCCESS])
    exporter = RetryOnceExporter(inner, retry_delay=0.0)
    assert exporter.export([]) is SpanExportResult.SUCCESS
    assert inner.calls == 2


def test_retry_once_exporter_drops_batch_after_second_failure(caplog: pytest.LogCaptureFixture) -> None:
    inner = FlakyExporter([ConnectionError("refused"), SpanExportResult.FAILURE, SpanExportResult.SUCCESS])
    exporter = RetryOnceExporter(inner, retry_delay=0.0)

    with caplog.at_level(logging.WARNING, logger="reqpulse.observability.lifecycle"):
        assert exporter.export([]) is SpanExportResult.FAILURE

    assert inner.calls == 2
    assert "dropped batch" in caplog.text


def test_retry_wait_is_cut_short_by_shutdown() -> None:
    inner = FlakyExporter([SpanExportResult.FAILURE])
    exporter = RetryOnceExporter(inner, retry_delay=30.0)
    exporter.shutdown()

    start = time.monotonic()
    assert exporter.export([]) is SpanExportResult.FAILURE
    assert time.monotonic() - start < 1.0
    assert inner.calls == 1


def test_instrumentation_filter_excludes_paths_and_collector() -> None:
    settings = Settings(exporter_endpoint="https://otel.example.com/v1/traces")
    filt = InstrumentationFilter.from_settings(settings)

    assert not filt.should_trace_path("/health")
    assert not filt.should_trace_path("/metrics/extra")
    assert filt.should_trace_path("/healthy")
    assert filt.should_trace_path("/api/users")

    assert not filt.should_trace_destination("otel.example.com", 443)
    assert filt.should_trace_destination("otel.example.com", 8443)
    assert not filt.should_trace_destination("LOCALHOST", 9090)
    assert filt.should_trace_destination("api.example.com", 443)


async def test_instrumented_client_opens_client_spans(settings: Settings) -> None:
    exporter = InMemorySpanExporter()
    lifecycle = TelemetryLifecycle(settings)
    lifecycle.initialize(exporters=[exporter])

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503 if request.url.path == "/down" else 200)

    async with lifecycle.instrument_client(transport=httpx.MockTransport(handler)) as client:
        assert (await client.get("https://api.example.com/items")).status_code == 200
        assert (await client.get("https://api.example.com/down")).status_code == 503
        # The collector itself is never traced.
        assert (await client.post("http://localhost:4318/v1/traces")).status_code == 200

    lifecycle.shutdown(2.0)
    spans = exporter.get_finished_spans()
    assert [s.attributes["http.url"] for s in spans] == [
        "https://api.example.com/items",
        "https://api.example.com/down",
    ]
    assert all(s.kind is trace.SpanKind.CLIENT for s in spans)
    assert spans[1].status.status_code is trace.StatusCode.ERROR


def test_log_correlation_adds_active_span_ids(settings: Settings) -> None:
    lifecycle = TelemetryLifecycle(settings)
    lifecycle.initialize(exporters=[])

    assert "trace_id" not in add_trace_context(None, "info", {})
    with lifecycle.get_emitter("logs").start_as_current_span("op") as span:
        event = add_trace_context(None, "info", {"event": "hello"})

    assert event["trace_id"] == format(span.get_span_context().trace_id, "032x")
    assert event["span_id"] == format(span.get_span_context().span_id, "016x")
    lifecycle.shutdown(1.0)
