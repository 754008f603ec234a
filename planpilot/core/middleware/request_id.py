import logging
import re
import time
from uuid import uuid4

from starlette.middleware.base import BaseHTTPMiddleware

from planpilot.core.logging import LOGGER_NAME, latency_bucket_ms, request_id_ctx_var


REQUEST_ID_HEADER = "x-request-id"

# Caller-supplied ids end up in logs and error payloads.
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def accept_request_id(candidate) -> str:
    """Return the caller's id when it is safe to echo, else a fresh uuid4."""
    if candidate and _VALID_REQUEST_ID.match(candidate):
        return candidate
    return str(uuid4())


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Correlate a request across logs, error bodies and the response header.

    Also emits one ``request.complete`` line per request with the caller's
    user id (set by the auth dependency) and a latency bucket.
    """

    def __init__(self, app, header_name: str = REQUEST_ID_HEADER):
        super().__init__(app)
        self.header_name = header_name
        self.logger = logging.getLogger(LOGGER_NAME)

    async def dispatch(self, request, call_next):
        rid = accept_request_id(request.headers.get(self.header_name))
        request.state.request_id = rid
        token = request_id_ctx_var.set(rid)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)

        response.headers[self.header_name] = rid
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        self.logger.log(
            level,
            "request.complete",
            extra={
                "request_id": rid,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "user_id": getattr(request.state, "user_id", None),
                "latency_bucket": latency_bucket_ms((time.perf_counter() - started) * 1000),
            },
        )
        return response
