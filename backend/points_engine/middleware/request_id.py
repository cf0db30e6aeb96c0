"""
Points Engine — Request ID Middleware
======================================

What:  Assigns a correlation id to each request and echoes it in X-Request-ID.
Why:   Every log line about one point movement (route, ledger, webhook intake)
       shares the id, and error responses carry it for support tickets.
How:   Accepts a caller-supplied X-Request-ID (e.g. the processor's delivery
       id forwarded by a proxy) or generates a short one; stores it in a
       ContextVar read by loggers and exception handlers.
"""

import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests on one event loop each see their own id
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Client-supplied ids end up in logs; keep them short and printable
_VALID_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        supplied = request.headers.get("X-Request-ID", "")
        rid = supplied if _VALID_ID.match(supplied) else str(uuid.uuid4())[:8]

        token = request_id_var.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = rid
        return response
