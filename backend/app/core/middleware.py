"""
HTTP middleware: request ids and access logging.

Each request gets an id (taken from ``X-Request-ID`` when the caller
sends one) that is echoed back, bound to the log context for the
duration of the request, and written on the access line together with
the response status and latency.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import bind_log_context, clear_log_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
ELAPSED_HEADER = "X-Response-Time-Ms"

# Health-check and docs traffic is not access-logged
_UNLOGGED_PATHS = ("/health/live", "/docs", "/redoc", "/openapi.json", "/favicon.ico")


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 1)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id and log one access line for it."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        path = request.url.path
        peer = request.client.host if request.client else "-"

        bind_log_context(request_id=request_id, client_ip=peer, method=request.method, path=path)
        started = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "%s %s failed after %.1fms",
                    request.method, path, _elapsed_ms(started),
                    extra={"status_code": 500, "endpoint": path, "duration_ms": _elapsed_ms(started)},
                )
                raise

            elapsed = _elapsed_ms(started)
            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers[ELAPSED_HEADER] = str(elapsed)

            if path not in _UNLOGGED_PATHS:
                logger.log(
                    logging.WARNING if response.status_code >= 400 else logging.INFO,
                    "%s %s %d %.1fms",
                    request.method, path, response.status_code, elapsed,
                    extra={"status_code": response.status_code, "endpoint": path, "duration_ms": elapsed},
                )
            return response
        finally:
            clear_log_context()
