"""Error normalization and handlers."""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException
from starlette.requests import Request

from promptforge.core.logging import get_request_id

logger = logging.getLogger("promptforge")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        # Extra top-level fields merged into the response body
        self.extra = dict(extra or {})


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class AuthenticationError(AppError):
    code = "unauthorized"
    status_code = 401


class PermissionError(AppError, builtins.PermissionError):
    code = "forbidden"
    status_code = 403


class EntitlementError(AppError):
    """Raised when the caller's plan does not include the requested feature."""
    code = "entitlement_required"
    status_code = 403


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


class UpstreamError(AppError):
    """A third-party dependency (backend, Stripe, notification channel) failed."""
    code = "upstream_error"
    status_code = 500


class ServiceUnavailableError(AppError):
    code = "service_unavailable"
    status_code = 503


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or uuid4().hex
    )


# Codes for framework-raised HTTPExceptions; anything else is "http_error"
HTTP_STATUS_CODES = {
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    413: "payload_too_large",
}


def error_response(
    rid: str,
    status_code: int,
    code: str,
    message: str,
    extra: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    """Build the normalized error body; extras never overwrite ``error`` or ``detail``."""
    payload: Dict[str, Any] = {
        "error": {"code": code, "message": message, "request_id": rid},
        "detail": message,
    }
    for key, value in (extra or {}).items():
        payload.setdefault(key, value)
    return JSONResponse(status_code=status_code, content=payload, headers={"x-request-id": rid})


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return error_response(rid, exc.status_code, exc.code, exc.message, exc.extra)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = HTTP_STATUS_CODES.get(exc.status_code, "http_error")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = error_response(rid, exc.status_code, code, exc.detail or "HTTP error")
    for name, value in (exc.headers or {}).items():
        response.headers[name] = value
    return response


async def request_validation_handler(request: Request, exc: RequestValidationError):
    rid = _extract_request_id(request)
    errors = [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    logger.warning("request.validation_error", extra={"request_id": rid, "error_code": "validation_error", "status": 422})
    return error_response(rid, 422, "validation_error", "Request validation failed", {"errors": errors})


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    return error_response(rid, 500, "internal_error", "Unexpected error")
