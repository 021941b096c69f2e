"""
Chapterly Backend — Rate Limiting Middleware
==============================================

What:  Per-IP sliding window rate limiter.
Why:   Unlock and purchase endpoints each hit the database with a row lock;
       a misbehaving client retry loop should not be able to monopolize them.
How:   Keeps the request timestamps of the current window per IP in memory.
       Over the limit → 429 with Retry-After, rendered from
       RateLimitExceededError so the body matches every other error.

Single process only: the state lives in this worker's memory.
"""

import logging
import time
from collections import defaultdict, deque
from typing import Deque, Dict

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from chapterly.config import settings
from chapterly.exceptions import RateLimitExceededError
from chapterly.middleware.request_id import client_ip

logger = logging.getLogger(__name__)

# Stripe delivers webhooks in bursts from a handful of IPs
EXCLUDED_PATHS = {"/health", "/docs", "/openapi.json", "/redoc", "/api/payments/stripe/webhook"}
EXCLUDED_PREFIXES = ("/.well-known/",)

CLEANUP_EVERY = 1000


class RateLimitMiddleware(BaseHTTPMiddleware):

    def __init__(self, app, max_requests: int = None, window_seconds: int = None, **kwargs):
        super().__init__(app, **kwargs)
        self.max_requests = max_requests or settings.rate_limit_requests
        self.window_seconds = window_seconds or settings.rate_limit_window
        self._requests: Dict[str, Deque[float]] = defaultdict(deque)
        self._seen = 0

    def _is_excluded(self, path: str) -> bool:
        return path in EXCLUDED_PATHS or path.startswith(EXCLUDED_PREFIXES)

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if self._is_excluded(request.url.path):
            return await call_next(request)

        ip = client_ip(request)
        now = time.time()
        window_start = now - self.window_seconds

        timestamps = self._requests[ip]
        while timestamps and timestamps[0] <= window_start:
            timestamps.popleft()

        if len(timestamps) >= self.max_requests:
            retry_after = int(timestamps[0] + self.window_seconds - now) + 1
            logger.warning(
                "Rate limit exceeded for IP %s: %d requests in %ds window",
                ip, len(timestamps), self.window_seconds,
            )
            exc = RateLimitExceededError(retry_after=retry_after)
            return JSONResponse(
                status_code=429,
                content={"error": exc.message, "code": exc.code, "retry_after": retry_after},
                headers={"Retry-After": str(retry_after)},
            )

        timestamps.append(now)

        self._seen += 1
        if self._seen % CLEANUP_EVERY == 0:
            self._cleanup_inactive_ips(window_start)

        return await call_next(request)

    def _cleanup_inactive_ips(self, window_start: float) -> None:
        inactive = [ip for ip, ts in self._requests.items() if not ts or ts[-1] <= window_start]
        for ip in inactive:
            del self._requests[ip]
        if inactive:
            logger.debug("Cleaned up %d inactive IP entries", len(inactive))
