"""Error normalization and handlers."""

import logging
import math
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from planpilot.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id

    def headers(self) -> dict:
        return {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class FeatureRequiresProError(AppError):
    """Raised when a gated feature is used without an active Pro plan."""
    code = "requires_pro"
    status_code = 402

    def __init__(self, message: str, *, feature: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.feature = feature


class UnknownFeatureError(AppError):
    code = "unknown_feature"
    status_code = 403

    def __init__(self, message: str, *, feature: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.feature = feature


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429

    def __init__(
        self,
        message: str,
        *,
        limit: Optional[int] = None,
        reset_time_ms: Optional[int] = None,
        retry_after_s: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.limit = limit
        self.reset_time_ms = reset_time_ms
        self.retry_after_s = retry_after_s

    def headers(self) -> dict:
        headers = {"X-RateLimit-Remaining": "0"}
        if self.limit is not None:
            headers["X-RateLimit-Limit"] = str(self.limit)
        if self.retry_after_s is not None:
            headers["Retry-After"] = str(self.retry_after_s)
        if self.reset_time_ms is not None:
            # Epoch seconds, rounded up so clients never retry early.
            headers["X-RateLimit-Reset"] = str(math.ceil(self.reset_time_ms / 1000))
        return headers


class ProviderError(AppError):
    """An upstream collaborator (payments, LLM) failed."""
    code = "provider_error"
    status_code = 502


class ServiceUnavailableError(AppError):
    code = "service_unavailable"
    status_code = 503


class InvalidRateLimitConfig(ValueError):
    """Non-positive limit or window passed to the rate limiter."""


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    feature = getattr(exc, "feature", None)
    if feature:
        payload["error"]["feature"] = feature
    if isinstance(exc, RateLimitError) and exc.reset_time_ms is not None:
        payload["error"]["reset_time"] = exc.reset_time_ms
    logger = logging.getLogger("planpilot")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload, headers=exc.headers())
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    if exc.status_code == 404:
        code = "not_found"
    elif exc.status_code == 401:
        code = "unauthorized"
    elif exc.status_code == 405:
        code = "method_not_allowed"
    else:
        code = "http_error"
    message = exc.detail if isinstance(exc.detail, str) and exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("planpilot")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))
    response.headers["x-request-id"] = rid
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{location}: {first.get('msg')}" if location else str(first.get("msg", "Invalid request"))
    payload = _error_payload("validation_error", message, rid)
    logging.getLogger("planpilot").warning(
        "request.invalid", extra={"request_id": rid, "error_code": "validation_error", "status": 422}
    )
    response = JSONResponse(status_code=422, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("planpilot")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
