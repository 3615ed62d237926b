"""
API middleware stack.

- Request ID injection (X-Request-ID header, bound into structlog context)
- Structured access logging
- JSON error handlers
- CORS configuration (read-only API)
- Per-client sliding-window rate limiting
"""
from __future__ import annotations

import time
import uuid

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

RATE_LIMIT_RPM = 240
RATE_LIMIT_WINDOW_S = 60
_UNLOGGED_PATHS = frozenset({"/health", "/metrics"})


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Attach a request ID to the request, the response and every log line in between."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        with structlog.contextvars.bound_contextvars(request_id=request_id):
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _UNLOGGED_PATHS:
            return await call_next(request)

        start = time.monotonic()
        response = await call_next(request)
        logger.info(
            "http_request",
            method=request.method,
            path=path,
            query=str(request.query_params) or None,
            status=response.status_code,
            duration_ms=round((time.monotonic() - start) * 1000, 2),
        )
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """In-memory sliding window per client IP."""

    def __init__(self, app: FastAPI, rpm: int = RATE_LIMIT_RPM) -> None:
        super().__init__(app)
        self._rpm = rpm
        self._hits: dict[str, list[float]] = {}

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in _UNLOGGED_PATHS:
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        now = time.monotonic()
        hits = [t for t in self._hits.get(client, []) if now - t < RATE_LIMIT_WINDOW_S]
        if len(hits) >= self._rpm:
            self._hits[client] = hits
            return JSONResponse(
                status_code=429,
                content={"error": "rate_limit_exceeded", "message": f"Max {self._rpm} requests per minute"},
                headers={"Retry-After": str(RATE_LIMIT_WINDOW_S)},
            )
        hits.append(now)
        self._hits[client] = hits

        response = await call_next(request)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self._rpm - len(hits)))
        return response


def setup_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        if exc.status_code == 404:
            error = "not_found"
        elif exc.status_code == 400:
            error = "bad_request"
        else:
            error = "http_error"
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": error, "message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "unknown")
        logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "request_id": request_id,
            },
        )


def setup_cors(app: FastAPI) -> None:
    settings = get_settings()
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["ETag", "X-Request-ID", "X-RateLimit-Remaining"],
    )


def setup_middleware(app: FastAPI) -> None:
    """Apply all middleware to the FastAPI app in the correct order."""
    # Starlette runs the last-added middleware first.
    setup_cors(app)
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    setup_exception_handlers(app)
