"""Request context middleware — request id, access log line.

Learn: Every request gets an id, either from the incoming X-Request-ID
header or a fresh UUID. It is bound into structlog's contextvars together
with the method and canonical path, so every log entry emitted while the
request runs (service, store) carries them. The id goes back to the
client in the X-Request-ID response header.

One "http.request" entry is logged per request with status and duration;
a request whose handler raised is logged as "http.request_failed" and the
exception propagates to Starlette's error handling.
"""

import time
import uuid

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Bind a request id for logging and echo it in the response."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.scope["path"],
        )

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("http.request_failed", duration_ms=_elapsed_ms(started))
            raise

        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "http.request",
            status=response.status_code,
            duration_ms=_elapsed_ms(started),
        )
        return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
