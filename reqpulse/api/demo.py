from __future__ import annotations

import asyncio
import json
import random
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Query, Request


router = APIRouter(tags=["demo"])

# Error scenarios served by /error, keyed by the ``type`` query parameter.
ERROR_SCENARIOS: dict[str, tuple[int, str]] = {
    "validation": (400, "Invalid input provided"),
    "unauthorized": (401, "Authentication required"),
    "forbidden": (403, "Access denied"),
    "notfound": (404, "Resource not found"),
}
DEFAULT_ERROR = (500, "Intentional server error for testing")


@router.get("/")
async def index() -> dict:
    return {
        "message": "reqpulse demo service",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "endpoints": [
            "/slow", "/error", "/echo", "/metrics", "/health", "/health/detailed",
            "/ready", "/live", "/info", "/ws/dashboard",
        ],
    }


@router.get("/slow")
async def slow(delay: int | None = Query(default=None, description="Delay in milliseconds")) -> dict:
    if delay is None or not 0 < delay <= 10_000:
        delay = random.randint(500, 1500)
    await asyncio.sleep(delay / 1000.0)
    return {"message": "Slow response completed", "delay_ms": delay}


@router.get("/error")
async def error(error_type: str | None = Query(default=None, alias="type")) -> dict:
    status_code, detail = ERROR_SCENARIOS.get((error_type or "").lower(), DEFAULT_ERROR)
    raise HTTPException(status_code=status_code, detail=detail)


@router.api_route("/echo", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
async def echo(request: Request) -> dict:
    raw = await request.body()
    body: object = None
    if raw:
        try:
            body = json.loads(raw)
        except ValueError:
            body = raw.decode("utf-8", errors="replace")
    return {
        "method": request.method,
        "path": request.url.path,
        "query": dict(request.query_params),
        "headers": {k: v for k, v in request.headers.items() if k.lower() != "authorization"},
        "body": body,
    }
