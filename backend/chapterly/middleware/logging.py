"""
Chapterly Backend — Access Logging Middleware
===============================================

What:  One log line per request: method, path, status, duration, request ID.
Why:   uvicorn's access log is silenced (no request IDs, no durations).
How:   Level follows the status: 5xx → ERROR, 4xx → WARNING, else INFO.
       Bodies and Authorization headers are never logged; purchase tokens
       and magic-link codes travel in bodies.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from chapterly.middleware.request_id import client_ip, request_id_var

logger = logging.getLogger("chapterly.access")

# Probed constantly by the platform; logging them drowns real traffic
QUIET_PATHS = {"/health"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in QUIET_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO

        rid = request_id_var.get("")
        logger.log(
            log_level,
            "%s %s %d %.1fms [%s] from %s",
            request.method,
            path,
            status,
            duration_ms,
            rid,
            client_ip(request),
            extra={
                "request_id": rid,
                "status": status,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return response
