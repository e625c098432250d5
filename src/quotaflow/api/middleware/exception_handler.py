"""Exception handlers for FastAPI.

Every error leaves the API as
``{"success": false, "error": {"code", "message", "details"?}, "correlation_id"?}``.
Webhook senders and quota callers only branch on ``error.code``.
"""

from __future__ import annotations

from http import HTTPStatus
from typing import TYPE_CHECKING, Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from quotaflow.core.exceptions import (
    ErrorCode,
    QuotaFlowException,
    RateLimitError,
    get_http_status_for_exception,
)
from quotaflow.core.logging import get_correlation_id, get_logger

if TYPE_CHECKING:
    from fastapi import FastAPI

logger = get_logger(__name__)

_ROUTING_ERROR_CODES = {
    HTTPStatus.NOT_FOUND: ErrorCode.RESOURCE_NOT_FOUND,
    HTTPStatus.METHOD_NOT_ALLOWED: ErrorCode.INVALID_INPUT,
}


def error_response(
    status: HTTPStatus,
    code: ErrorCode,
    message: str,
    *,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Render the error envelope."""
    error: dict[str, Any] = {"code": code.value, "message": message}
    if details:
        error["details"] = details

    content: dict[str, Any] = {"success": False, "error": error}
    correlation_id = get_correlation_id()
    if correlation_id:
        content["correlation_id"] = correlation_id

    return JSONResponse(status_code=status.value, content=content, headers=headers)


async def quotaflow_exception_handler(
    request: Request,
    exc: QuotaFlowException,
) -> JSONResponse:
    """Domain errors keep their own code and status."""
    log = logger.error if exc.http_status >= HTTPStatus.INTERNAL_SERVER_ERROR else logger.warning
    log(
        "request_rejected",
        error_code=exc.error_code.value,
        error_message=exc.message,
        http_status=exc.http_status.value,
        path=request.url.path,
        details=exc.details,
    )

    headers = None
    if isinstance(exc, RateLimitError) and exc.retry_after:
        headers = {"Retry-After": str(exc.retry_after)}

    return error_response(
        exc.http_status,
        exc.error_code,
        exc.user_message,
        details=exc.details,
        headers=headers,
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Bad path or query parameters, e.g. ``limit=0`` on the archive listing."""
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
        }
        for error in exc.errors()
    ]
    logger.warning("request_validation_failed", path=request.url.path, errors=errors)

    return error_response(
        HTTPStatus.BAD_REQUEST,
        ErrorCode.VALIDATION_ERROR,
        "Request validation failed",
        details={"validation_errors": errors},
    )


async def routing_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Unknown paths and wrong methods."""
    status = HTTPStatus(exc.status_code)
    logger.info("route_not_served", status_code=exc.status_code, path=request.url.path)

    return error_response(
        status,
        _ROUTING_ERROR_CODES.get(status, ErrorCode.UNKNOWN_ERROR),
        str(exc.detail) if exc.detail else status.phrase,
    )


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """Anything else is logged with its traceback and hidden from the caller."""
    logger.exception(
        "unhandled_exception",
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return error_response(
        get_http_status_for_exception(exc),
        ErrorCode.INTERNAL_ERROR,
        "An unexpected error occurred. Please try again later.",
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the handlers on ``app``."""
    app.add_exception_handler(QuotaFlowException, quotaflow_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, routing_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, unhandled_exception_handler)
