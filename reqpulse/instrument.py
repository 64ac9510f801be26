"""Attach reqpulse telemetry to an existing FastAPI application."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any

from fastapi import FastAPI
from opentelemetry.sdk.trace.export import SpanExporter

from reqpulse.api.health import build_router as build_health_router
from reqpulse.api.metrics import build_router as build_metrics_router
from reqpulse.api.stream import router as stream_router
from reqpulse.config import Settings, get_settings
from reqpulse.observability.logging import configure_logging
from reqpulse.observability.middleware import InstrumentationMiddleware
from reqpulse.runtime import Observability


logger = logging.getLogger(__name__)

Lifespan = Callable[[Any], AbstractAsyncContextManager]


def _with_telemetry(inner: Lifespan, obs: Observability) -> Lifespan:
    @asynccontextmanager
    async def lifespan(app: Any) -> AsyncIterator[Any]:
        configure_logging(obs.settings.log_level_number, trace_correlation=obs.settings.instrument_log_correlation)
        await obs.start()
        logger.info("reqpulse started: telemetry %s", obs.lifecycle.state.value)
        try:
            async with inner(app) as state:
                yield state
        finally:
            if not await obs.shutdown():
                logger.warning("telemetry did not drain before shutdown deadline")

    return lifespan


def instrument_app(
    app: FastAPI,
    settings: Settings | None = None,
    *,
    exporters: Iterable[SpanExporter] | None = None,
    add_endpoints: bool = True,
    metrics_path: str = "/metrics",
    health_path: str = "/health",
) -> Observability:
    """Instrument ``app`` in place and return its Observability.

    Adds the request middleware, optionally the metrics, health and dashboard
    endpoints, and runs telemetry start-up and shutdown around the app's own
    lifespan. Must be called before the app starts serving.
    """

    for path in (metrics_path, health_path):
        if not path.startswith("/"):
            raise ValueError(f"endpoint path must start with '/': {path!r}")

    settings = settings or get_settings()
    obs = Observability.from_settings(settings, exporters=exporters)
    obs.metrics_path = metrics_path
    obs.health_path = health_path
    app.state.observability = obs

    exclude_paths = list(settings.metrics_exclude_paths)
    if add_endpoints and metrics_path not in exclude_paths:
        exclude_paths.append(metrics_path)
    app.add_middleware(
        InstrumentationMiddleware,
        registry=obs.registry,
        traces=obs.traces,
        lifecycle=obs.lifecycle,
        exclude_paths=exclude_paths,
        route_label_limit=settings.route_label_limit,
    )
    if add_endpoints:
        app.include_router(build_metrics_router(metrics_path))
        app.include_router(build_health_router(health_path))
        app.include_router(stream_router)

    app.router.lifespan_context = _with_telemetry(app.router.lifespan_context, obs)
    return obs
