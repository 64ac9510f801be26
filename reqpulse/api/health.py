from __future__ import annotations

import asyncio
import os
import platform
from datetime import datetime, timezone
from time import perf_counter

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from reqpulse.api.deps import get_observability
from reqpulse.observability.process import process_usage
from reqpulse.runtime import Observability


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _service_block(obs: Observability) -> dict[str, str]:
    settings = obs.settings
    return {
        "name": settings.service_name,
        "version": settings.service_version,
        "namespace": settings.service_namespace,
        "environment": settings.environment,
    }


async def health(obs: Observability = Depends(get_observability)) -> dict:
    return {
        "status": "healthy",
        "timestamp": _now(),
        "service": _service_block(obs),
        "telemetry": {"state": obs.lifecycle.state.value, "ready": obs.lifecycle.is_ready},
        "uptime": round(obs.uptime_s, 3),
    }


async def health_detailed(obs: Observability = Depends(get_observability)) -> dict:
    usage = process_usage()
    return {
        "status": "healthy",
        "timestamp": _now(),
        "service": {**_service_block(obs), "uptime": round(obs.uptime_s, 3), "pid": os.getpid()},
        "system": {
            "platform": platform.system().lower(),
            "arch": platform.machine(),
            "python_version": platform.python_version(),
            "memory": {"max_rss_bytes": usage["max_rss_bytes"]},
            "cpu_usage": {"user_s": usage["user_s"], "system_s": usage["system_s"]},
        },
        "telemetry": {"initialized": obs.lifecycle.is_ready, "service_name": obs.settings.service_name},
    }


async def live() -> dict:
    # Answering at all proves the loop is responsive; the lag shows how busy it is.
    start = perf_counter()
    await asyncio.sleep(0)
    return {"status": "alive", "timestamp": _now(), "loop_lag_ms": round((perf_counter() - start) * 1000.0, 3)}


async def ready(obs: Observability = Depends(get_observability)) -> JSONResponse:
    state = obs.lifecycle.state.value
    if not obs.lifecycle.is_ready:
        return JSONResponse({"status": "not_ready", "telemetry_state": state, "timestamp": _now()}, status_code=503)
    return JSONResponse({"status": "ready", "telemetry_state": state, "timestamp": _now()})


async def info(obs: Observability = Depends(get_observability)) -> dict:
    settings = obs.settings
    return {
        "service": _service_block(obs),
        "runtime": {
            "python": platform.python_version(),
            "platform": platform.system().lower(),
            "pid": os.getpid(),
            "uptime": round(obs.uptime_s, 3),
        },
        "monitoring": {
            "metrics": {"endpoint": obs.metrics_path, "format": "prometheus"},
            "tracing": {
                "state": obs.lifecycle.state.value,
                "collector": settings.exporter_endpoint,
                "sampling_ratio": settings.sampling_ratio,
            },
            "dashboard": {"stream": "/ws/dashboard", "interval_s": settings.broadcast_interval_s},
            "health": {
                "endpoint": obs.health_path,
                "detailed": f"{obs.health_path}/detailed",
                "readiness": "/ready",
                "liveness": "/live",
            },
        },
        "timestamp": _now(),
    }


def build_router(health_path: str = "/health") -> APIRouter:
    router = APIRouter(tags=["health"])
    router.add_api_route(health_path, health, methods=["GET"])
    router.add_api_route(f"{health_path}/detailed", health_detailed, methods=["GET"])
    router.add_api_route("/live", live, methods=["GET"])
    router.add_api_route("/ready", ready, methods=["GET"])
    router.add_api_route("/info", info, methods=["GET"])
    return router
