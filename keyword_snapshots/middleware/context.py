"""
Request context middleware.

Each request gets an id: the caller's X-Request-ID when it is short and made
of safe characters, a generated one otherwise. The id is bound into structlog
contextvars for the lifetime of the request and echoed in the response.
Snapshot and refresh calls slower than SLOW_REQUEST_THRESHOLD_MS are logged.
"""

import re
import time
from typing import Optional

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from keyword_snapshots.core.context import clear_context, generate_request_id, set_request_id

logger = structlog.get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
SLOW_REQUEST_THRESHOLD_MS = 500.0
UNTIMED_PATHS = ("/health",)

# Guards against log injection through the header
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")


def _validate_id(value: Optional[str]) -> Optional[str]:
    if value and _REQUEST_ID_PATTERN.match(value):
        return value
    return None


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = _validate_id(request.headers.get(REQUEST_ID_HEADER)) or generate_request_id()
        request.state.request_id = request_id
        set_request_id(request_id)

        started = time.perf_counter()
        status_code = 500
        with structlog.contextvars.bound_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        ):
            try:
                response = await call_next(request)
                status_code = response.status_code
                response.headers[REQUEST_ID_HEADER] = request_id
                return response
            finally:
                elapsed_ms = (time.perf_counter() - started) * 1000
                if elapsed_ms >= SLOW_REQUEST_THRESHOLD_MS and not request.url.path.startswith(UNTIMED_PATHS):
                    logger.warning("Slow request", duration_ms=round(elapsed_ms, 1), status_code=status_code)
                clear_context()
