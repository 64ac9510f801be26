from contextlib import asynccontextmanager

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from reqpulse.instrument import instrument_app
from reqpulse.observability.middleware import HTTP_REQUESTS_TOTAL


def _orders_app(events: list[str]) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        events.append("startup")
        yield
        events.append("shutdown")

    app = FastAPI(lifespan=lifespan)

    @app.get("/orders/{order_id}")
    async def get_order(order_id: int) -> dict:
        return {"id": order_id}

    return app


async def test_instrumented_app_keeps_its_routes_and_lifespan(settings) -> None:
    events: list[str] = []
    app = _orders_app(events)
    obs = instrument_app(
        app,
        settings,
        exporters=[InMemorySpanExporter()],
        metrics_path="/_ops/metrics",
        health_path="/_ops/health",
    )
    assert app.state.observability is obs

    async with app.router.lifespan_context(app):
        assert events == ["startup"]
        assert obs.lifecycle.state.value == "running"
        assert obs.broadcaster.running

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            assert (await client.get("/orders/7")).json() == {"id": 7}
            assert (await client.get("/orders/8")).status_code == 200

            body = (await client.get("/_ops/metrics")).text
            assert 'http_requests_total{method="GET",route="/orders/{order_id}",status_code="200"} 2' in body
            assert (await client.get("/_ops/health")).json()["telemetry"]["ready"] is True
            assert (await client.get("/_ops/health/detailed")).status_code == 200
            assert (await client.get("/ready")).status_code == 200

            info = (await client.get("/info")).json()
            assert info["monitoring"]["metrics"]["endpoint"] == "/_ops/metrics"
            assert info["monitoring"]["health"]["endpoint"] == "/_ops/health"

            assert (await client.get("/metrics")).status_code == 404

        snapshot = obs.registry.snapshot()
        scrapes = {"method": "GET", "route": "/_ops/metrics", "status_code": "200"}
        assert snapshot.scalar(HTTP_REQUESTS_TOTAL, scrapes) is None

    assert events == ["startup", "shutdown"]
    assert obs.lifecycle.state.value == "stopped"
    assert not obs.broadcaster.running


async def test_instrument_without_endpoints_only_records(settings) -> None:
    app = _orders_app([])
    obs = instrument_app(app, settings, exporters=[], add_endpoints=False)

    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            assert (await client.get("/orders/1")).status_code == 200
            assert (await client.get("/metrics")).status_code == 404
            assert (await client.get("/health")).status_code == 404

    snapshot = obs.registry.snapshot()
    assert snapshot.scalar(HTTP_REQUESTS_TOTAL, {"method": "GET", "route": "/orders/{order_id}", "status_code": "200"}) == 1


def test_instrument_rejects_relative_paths(settings) -> None:
    with pytest.raises(ValueError):
        instrument_app(FastAPI(), settings, metrics_path="metrics")
