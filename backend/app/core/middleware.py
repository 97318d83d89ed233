"""
Request middleware: correlation ids and per-request timing.

Every response carries:
    X-Request-ID     caller's value, or a fresh 16-hex id
    X-Process-Time   handler wall time

One log line per request (docs and schema routes excluded), WARNING for
4xx/5xx so failed SOS actions stand out in the stream.
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from backend.app.core.logging_config import set_alert_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon")


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        path = request.url.path
        set_alert_context(request_id=request_id)
        start = time.perf_counter()

        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "%s %s crashed", request.method, path,
                    extra={"duration_ms": _elapsed_ms(start), "status_code": 500, "endpoint": path},
                )
                raise

            elapsed = _elapsed_ms(start)
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = f"{elapsed:.1f}ms"

            if not path.startswith(_QUIET_PREFIXES):
                level = logging.WARNING if response.status_code >= 400 else logging.INFO
                logger.log(
                    level, "%s %s -> %d (%.1fms)",
                    request.method, path, response.status_code, elapsed,
                    extra={"duration_ms": elapsed, "status_code": response.status_code, "endpoint": path},
                )
            return response
        finally:
            set_alert_context()
