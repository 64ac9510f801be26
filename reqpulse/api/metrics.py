from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse, Response

from reqpulse.api.deps import get_observability
from reqpulse.observability.metrics import CONTENT_TYPE_LATEST
from reqpulse.runtime import Observability


logger = logging.getLogger(__name__)


async def metrics(obs: Observability = Depends(get_observability)) -> Response:
    try:
        body = obs.registry.render()
    except Exception as exc:
        logger.exception("rendering metrics failed")
        return PlainTextResponse(str(exc), status_code=500)
    return Response(content=body, media_type=CONTENT_TYPE_LATEST)


def build_router(path: str = "/metrics") -> APIRouter:
    router = APIRouter(tags=["metrics"])
    router.add_api_route(path, metrics, methods=["GET"])
    return router
