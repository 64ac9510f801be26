from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from reqpulse.config import Settings, get_settings
from reqpulse.main import create_app


@pytest.fixture(autouse=True)
def test_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    # Never ship spans to a real collector from tests.
    monkeypatch.setenv("OTEL_EXPORTER_OTLP_ENABLED", "false")
    monkeypatch.setenv("OTEL_EXPORTER_CONSOLE_ENABLED", "false")
    get_settings.cache_clear()

    yield

    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        service_name="reqpulse-test",
        service_instance_id="test-instance",
        export_retry_delay_s=0.0,
        flush_interval_ms=50,
        shutdown_timeout_s=2.0,
        broadcast_interval_s=0.05,
    )


@pytest.fixture
def span_exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
async def app(settings: Settings, span_exporter: InMemorySpanExporter) -> AsyncIterator[FastAPI]:
    application = create_app(settings, exporters=[span_exporter])
    async with application.router.lifespan_context(application):
        yield application


@pytest.fixture
async def api_client(app: FastAPI) -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
