"""Request context middleware: request id, timing and one access log line.

The request id is taken from an incoming ``X-Request-ID`` header when a
proxy already assigned one, so log lines can be correlated across hops.
Lookups are logged at DEBUG; the CLA bot polls ``/list/{user}`` for every
pull request and would otherwise drown the interesting lines.
"""

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from ..core.logging_config import request_id_var

logger = logging.getLogger(__name__)

_QUIET_SEGMENT = "/list/"


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tag each request with an id, time it and log the outcome."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = request.headers.get("x-request-id") or uuid.uuid4().hex[:16]
        token = request_id_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            elapsed_ms = round((time.perf_counter() - started) * 1000, 1)
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = rid
        response.headers["X-Response-Time"] = f"{elapsed_ms}ms"

        path = request.url.path
        quiet = _QUIET_SEGMENT in path and response.status_code < 500
        logger.log(
            logging.DEBUG if quiet else logging.INFO,
            "%s %s %d",
            request.method,
            path,
            response.status_code,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": elapsed_ms,
            },
        )
        return response
