from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


logger = logging.getLogger(__name__)


def _error_response(request: Request, status_code: int, message: str, **extra) -> JSONResponse:
    payload = {
        "error": {
            "message": message,
            "status": status_code,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "path": request.url.path,
            **extra,
        }
    }
    return JSONResponse(jsonable_encoder(payload), status_code=status_code)


def register_error_handlers(app: FastAPI) -> None:
    """Render every error as ``{"error": {message, status, timestamp, path}}``."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
            message = "Internal Server Error"
        elif exc.status_code == 404 and exc.detail == "Not Found":
            message = f"Route {request.method} {request.url.path} not found"
        else:
            message = str(exc.detail)
        response = _error_response(request, exc.status_code, message)
        if exc.headers:
            response.headers.update(exc.headers)
        return response

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error_response(request, 422, "Request validation failed", detail=exc.errors())
