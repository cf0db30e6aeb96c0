"""
Points Engine — Request Logging Middleware
===========================================

What:  One access-log line per HTTP request: method, path, status, duration,
       request id, acting user.
Why:   Point movements are audited in the ledger; the access log ties each
       one back to the HTTP call that caused it.
Who:   Applied to every request; logs on the "points_engine.access" logger.

What we log vs what we DON'T log:
    ✅ method, path, status, duration, client IP, request id, X-User-Id
    ❌ request bodies (webhook payloads carry customer metadata), signatures
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from points_engine.middleware.request_id import request_id_var

logger = logging.getLogger("points_engine.access")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Level follows the status: 5xx → ERROR, 4xx → WARNING, else INFO.
    Health probes are not logged.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path == "/health":
            return await call_next(request)

        start_time = time.perf_counter()
        client_ip = request.client.host if request.client else "unknown"
        user_id = request.headers.get("X-User-Id", "-")

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
            "%s %s %d %.1fms [%s] user=%s from %s",
            request.method,
            path,
            status,
            duration_ms,
            rid,
            user_id,
            client_ip,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "user_id": user_id,
            },
        )
        return response
