"""
Request middleware for logging, timing, and request ID tracking.
"""

import re
import time
import uuid
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
import structlog

from app.core.logging import get_logger

logger = get_logger(__name__)

REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def incoming_request_id(request: Request) -> Optional[str]:
    """The caller's X-Request-ID, if it is safe to echo into logs and headers."""
    value = request.headers.get("X-Request-ID")
    if value and REQUEST_ID_PATTERN.match(value):
        return value
    return None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    1. Propagates the caller's X-Request-ID, or assigns one
    2. Binds request context to structlog so service logs correlate
    3. Logs status and duration; 5xx responses log at error level
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = incoming_request_id(request) or uuid.uuid4().hex[:12]
        start_time = time.perf_counter()

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_ms=round((time.perf_counter() - start_time) * 1000, 2),
            )
            raise

        duration_ms = round((time.perf_counter() - start_time) * 1000, 2)
        log = logger.error if response.status_code >= 500 else logger.info
        log("request_completed", status_code=response.status_code, duration_ms=duration_ms)

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Response-Time"] = f"{duration_ms}ms"
        return response
