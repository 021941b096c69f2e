"""
Chapterly Backend — Request ID Middleware
===========================================

What:  Assigns every request a correlation ID and returns it as X-Request-ID.
Why:   Purchase problems are reported by users with a screenshot of an error;
       the request_id in the error body finds the matching log lines.
How:   Reuses a sane client-supplied X-Request-ID (the mobile app sends one),
       otherwise generates one. Stored in a ContextVar for handlers and logs.
"""

import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Client IDs end up in log lines; keep them short and printable
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def client_ip(request: Request) -> str:
    """
    Caller address as seen by the ASGI server.

    X-Forwarded-For is not read here: it is client-controlled. Behind the
    platform proxy, run uvicorn with --proxy-headers --forwarded-allow-ips
    so request.client already holds the trusted hop.
    """
    return request.client.host if request.client else "unknown"



class RequestIDMiddleware(BaseHTTPMiddleware):

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        supplied = request.headers.get("X-Request-ID", "")
        rid = supplied if _VALID_REQUEST_ID.match(supplied) else uuid.uuid4().hex[:12]

        request_id_var.set(rid)
        request.state.request_id = rid

        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response
