from __future__ import annotations

from collections.abc import Iterable

from fastapi import FastAPI
from opentelemetry.sdk.trace.export import SpanExporter

from reqpulse.api.demo import router as demo_router
from reqpulse.api.errors import register_error_handlers
from reqpulse.config import Settings, get_settings
from reqpulse.instrument import instrument_app


def create_app(settings: Settings | None = None, exporters: Iterable[SpanExporter] | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="reqpulse", version=settings.service_version)
    instrument_app(app, settings, exporters=exporters)
    register_error_handlers(app)
    app.include_router(demo_router)
    return app


app = create_app()
