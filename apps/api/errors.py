"""Service-layer error taxonomy and the JSON error envelope."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    """Base class for service-layer errors."""

    status_code = 400
    code = "service_error"

    def __init__(self, message: str, *, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}


class UnauthorizedError(ServiceError):
    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Authentication required."):
        super().__init__(message)


class ForbiddenError(ServiceError):
    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Not allowed."):
        super().__init__(message)


class ValidationError(ServiceError):
    status_code = 400
    code = "validation_error"

    def __init__(self, message: str = "Validation error", *, field: Optional[str] = None):
        super().__init__(message, extra={"field": field} if field else None)
        self.field = field


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"

    def __init__(self, message: str = "Not found"):
        super().__init__(message)


class InsufficientCreditsError(ServiceError):
    """Business-rule rejection: the balance does not cover the cost."""

    status_code = 402
    code = "insufficient_credits"

    def __init__(self, required: int, available: int, top_up_url: str = "/credits"):
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}. Top up credits to continue.",
            extra={"required": required, "available": available, "top_up_url": top_up_url},
        )
        self.required = required
        self.available = available


class SignatureVerificationError(ServiceError):
    status_code = 400
    code = "invalid_signature"

    def __init__(self, message: str = "Webhook signature verification failed."):
        super().__init__(message)


class ExternalServiceError(ServiceError):
    status_code = 502
    code = "external_service_error"

    def __init__(self, service: str, message: str):
        super().__init__(f"{service} request failed: {message}", extra={"service": service})
        self.service = service


class ServiceUnavailableError(ServiceError):
    status_code = 503
    code = "service_unavailable"

    def __init__(self, message: str = "Service temporarily unavailable. Retry shortly."):
        super().__init__(message, extra={"retryable": True})


class LedgerError(ServiceError):
    status_code = 500
    code = "ledger_error"

    def __init__(self, message: str = "Credit ledger operation failed."):
        super().__init__(message)


_HTTP_CODE_MAP = {
    400: "bad_request",
    401: "unauthorized",
    402: "payment_required",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limit_exceeded",
    503: "service_unavailable",
}


def _request_id(request: Request) -> str:
    rid = request.headers.get("x-request-id") or getattr(request.state, "request_id", None)
    return str(rid) if rid else str(uuid.uuid4())


def _json_error(
    request: Request,
    status: int,
    err_type: str,
    message: str,
    extra: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    rid = _request_id(request)
    error: Dict[str, Any] = {"type": err_type, "message": message}
    if extra:
        error.update(extra)
    response_headers = {"X-Request-ID": rid}
    if headers:
        response_headers.update(headers)
    return JSONResponse(
        status_code=status,
        content={"type": "error", "error": error, "request_id": rid},
        headers=response_headers,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers for consistent JSON errors.

    Response envelope:
    {
      "type": "error",
      "error": {"type": "<error_code>", "message": "<human message>", ...},
      "request_id": "<uuid>"
    }
    """

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
        return _json_error(request, exc.status_code, exc.code, exc.message, exc.extra)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        err_type = _HTTP_CODE_MAP.get(exc.status_code, "api_error")
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return _json_error(request, exc.status_code, err_type, detail or "Request failed", headers=exc.headers)

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):
        logger.exception("Database error on %s %s", request.method, request.url.path)
        return _json_error(request, 500, "database_error", "An internal database error occurred.")
