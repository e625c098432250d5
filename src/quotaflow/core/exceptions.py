"""Custom exceptions for QuotaFlow.

The hierarchy maps onto the ways the engine can fail:

- NotFound: unknown tier, unknown feature in a tier, user or quota record
  missing. Surfaced to the immediate caller and never retried.
- Unprocessable event: a webhook payload the reconciler cannot act on. The
  transition is skipped but ingestion as a whole still succeeds.
- Validation: catalog data that breaks the Feature invariant at seed time.
- Conflict: a version-guarded write that kept losing races.
"""

from __future__ import annotations

from enum import Enum
from http import HTTPStatus
from typing import Any


class ErrorCode(str, Enum):
    """Machine-readable error codes for API responses."""

    # General errors (1xxx)
    INTERNAL_ERROR = "QF1000"
    UNKNOWN_ERROR = "QF1001"
    CONFIGURATION_ERROR = "QF1002"

    # Authorization errors (3xxx)
    PERMISSION_DENIED = "QF3000"

    # Validation errors (4xxx)
    VALIDATION_ERROR = "QF4000"
    INVALID_INPUT = "QF4001"
    CATALOG_VALIDATION_ERROR = "QF4002"

    # Resource errors (5xxx)
    RESOURCE_NOT_FOUND = "QF5000"
    USER_NOT_FOUND = "QF5001"
    TIER_NOT_FOUND = "QF5002"
    FEATURE_NOT_FOUND = "QF5003"
    QUOTA_RECORD_NOT_FOUND = "QF5004"

    # Persistence errors (6xxx)
    CONCURRENCY_CONFLICT = "QF6001"

    # Webhook event errors (7xxx)
    UNPROCESSABLE_EVENT = "QF7000"
    UNKNOWN_ORDER_STATUS = "QF7001"
    MISSING_IDENTIFICATION = "QF7002"
    MISSING_PRODUCT = "QF7003"

    # Rate limiting errors (8xxx)
    RATE_LIMIT_EXCEEDED = "QF8000"
    QUOTA_EXCEEDED = "QF8001"


class QuotaFlowException(Exception):
    """Base exception for all QuotaFlow errors.

    Attributes:
        message: Human-readable error message.
        error_code: Machine-readable error code.
        http_status: HTTP status code for API responses.
        details: Additional context for debugging.
        user_message: User-friendly message (may differ from message).
    """

    message: str = "An unexpected error occurred"
    error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR
    http_status: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: ErrorCode | None = None,
        http_status: HTTPStatus | None = None,
        details: dict[str, Any] | None = None,
        user_message: str | None = None,
    ) -> None:
        """Initialize exception.

        Args:
            message: Human-readable error message.
            error_code: Machine-readable error code.
            http_status: HTTP status code for API responses.
            details: Additional context for debugging.
            user_message: User-friendly message for end users.
        """
        self.message = message or self.__class__.message
        self.error_code = error_code or self.__class__.error_code
        self.http_status = http_status or self.__class__.http_status
        self.details = details or {}
        self.user_message = user_message or self.message
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.user_message,
                "details": self.details if self.details else None,
            }
        }

    def __str__(self) -> str:
        """String representation including error code."""
        return f"[{self.error_code.value}] {self.message}"

    def __repr__(self) -> str:
        """Detailed representation for debugging."""
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code.value}, "
            f"http_status={self.http_status.value}, "
            f"details={self.details!r}"
            f")"
        )


# ============================================================================
# Authorization Exceptions
# ============================================================================


class AuthorizationError(QuotaFlowException):
    """Caller is not allowed to trigger this operation."""

    message = "Permission denied"
    error_code = ErrorCode.PERMISSION_DENIED
    http_status = HTTPStatus.FORBIDDEN


# ============================================================================
# Validation Exceptions
# ============================================================================


class ValidationError(QuotaFlowException):
    """Validation-related errors."""

    message = "Validation error"
    error_code = ErrorCode.VALIDATION_ERROR
    http_status = HTTPStatus.BAD_REQUEST

    def __init__(
        self,
        message: str | None = None,
        *,
        field: str | None = None,
        value: Any = None,
        constraint: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            field: Name of the field that failed validation.
            value: The invalid value.
            constraint: Description of the constraint that was violated.
            **kwargs: Additional arguments passed to parent.
        """
        details = kwargs.pop("details", {}) or {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)
        if constraint:
            details["constraint"] = constraint

        super().__init__(message, details=details, **kwargs)


class InvalidInputError(ValidationError):
    """Invalid input data."""

    message = "Invalid input data"
    error_code = ErrorCode.INVALID_INPUT


class CatalogValidationError(ValidationError):
    """A tier definition violates the Feature quota invariant."""

    message = "Tier definition is invalid"
    error_code = ErrorCode.CATALOG_VALIDATION_ERROR


# ============================================================================
# Resource Exceptions
# ============================================================================


class NotFoundError(QuotaFlowException):
    """Resource not found errors."""

    message = "Resource not found"
    error_code = ErrorCode.RESOURCE_NOT_FOUND
    http_status = HTTPStatus.NOT_FOUND

    def __init__(
        self,
        message: str | None = None,
        *,
        resource_type: str | None = None,
        resource_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize not found error.

        Args:
            message: Error message.
            resource_type: Type of resource not found.
            resource_id: ID of the resource.
            **kwargs: Additional arguments passed to parent.
        """
        details = kwargs.pop("details", {}) or {}
        if resource_type:
            details["resource_type"] = resource_type
        if resource_id:
            details["resource_id"] = resource_id

        if not message and resource_type:
            message = f"{resource_type} not found"

        super().__init__(message, details=details, **kwargs)


class UserNotFoundError(NotFoundError):
    """User not found by any correlation key."""

    message = "User not found"
    error_code = ErrorCode.USER_NOT_FOUND


class TierNotFoundError(NotFoundError):
    """Tier slug or external product reference is unknown."""

    message = "Tier not found"
    error_code = ErrorCode.TIER_NOT_FOUND


class FeatureNotFoundError(NotFoundError):
    """Feature is not part of the user's quota record."""

    message = "Feature not found"
    error_code = ErrorCode.FEATURE_NOT_FOUND


class QuotaRecordNotFoundError(NotFoundError):
    """User has no live quota record."""

    message = "Quota record not found"
    error_code = ErrorCode.QUOTA_RECORD_NOT_FOUND


# ============================================================================
# Persistence Exceptions
# ============================================================================


class ConcurrencyConflictError(QuotaFlowException):
    """A version-guarded write lost every retry against concurrent writers."""

    message = "Concurrent update conflict"
    error_code = ErrorCode.CONCURRENCY_CONFLICT
    http_status = HTTPStatus.CONFLICT
    user_message = "The record was modified concurrently. Please retry."


# ============================================================================
# Webhook Event Exceptions
# ============================================================================


class UnprocessableEventError(QuotaFlowException):
    """A billing event that cannot drive a state transition."""

    message = "Unprocessable billing event"
    error_code = ErrorCode.UNPROCESSABLE_EVENT
    http_status = HTTPStatus.UNPROCESSABLE_ENTITY

    def __init__(
        self,
        message: str | None = None,
        *,
        event_type: str | None = None,
        **kwargs: Any,
    ) -> None:
        details = kwargs.pop("details", {}) or {}
        if event_type:
            details["event_type"] = event_type
        super().__init__(message, details=details, **kwargs)


class UnknownOrderStatusError(UnprocessableEventError):
    """Order status is outside the known paid and revoking sets."""

    message = "Unknown order status"
    error_code = ErrorCode.UNKNOWN_ORDER_STATUS


class MissingIdentificationError(UnprocessableEventError):
    """Payload carries no key usable to resolve an internal user."""

    message = "No user identification found"
    error_code = ErrorCode.MISSING_IDENTIFICATION


class MissingProductError(UnprocessableEventError):
    """Order payload has no product reference."""

    message = "Missing product_id in order data"
    error_code = ErrorCode.MISSING_PRODUCT


# ============================================================================
# Rate Limiting Exceptions
# ============================================================================


class RateLimitError(QuotaFlowException):
    """Rate limit exceeded errors."""

    message = "Rate limit exceeded"
    error_code = ErrorCode.RATE_LIMIT_EXCEEDED
    http_status = HTTPStatus.TOO_MANY_REQUESTS
    user_message = "Too many requests. Please try again later."

    def __init__(
        self,
        message: str | None = None,
        *,
        retry_after: int | None = None,
        limit: int | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize rate limit error.

        Args:
            message: Error message.
            retry_after: Seconds until a token is available again.
            limit: The per-minute limit that was exceeded.
            **kwargs: Additional arguments passed to parent.
        """
        self.retry_after = retry_after
        details = kwargs.pop("details", {}) or {}
        if retry_after:
            details["retry_after_seconds"] = retry_after
        if limit:
            details["limit"] = limit

        super().__init__(message, details=details, **kwargs)


class QuotaExceededError(RateLimitError):
    """Feature quota exhausted for the current interval."""

    message = "Feature quota exceeded"
    error_code = ErrorCode.QUOTA_EXCEEDED
    http_status = HTTPStatus.FORBIDDEN

    def __init__(
        self,
        feature: str,
        current_usage: int,
        limit: int,
        **kwargs: Any,
    ) -> None:
        self.feature = feature
        self.current_usage = current_usage
        self.limit = limit
        details = kwargs.pop("details", {}) or {}
        details.update(
            {"feature": feature, "current_usage": current_usage, "quota_limit": limit}
        )
        super().__init__(
            f"Quota exceeded for {feature}: {current_usage}/{limit}",
            details=details,
            **kwargs,
        )


# ============================================================================
# Exception to HTTP Status Mapping
# ============================================================================


def get_http_status_for_exception(exc: Exception) -> HTTPStatus:
    """Get the appropriate HTTP status code for an exception."""
    if isinstance(exc, QuotaFlowException):
        return exc.http_status

    exception_status_map: dict[type, HTTPStatus] = {
        ValueError: HTTPStatus.BAD_REQUEST,
        TypeError: HTTPStatus.BAD_REQUEST,
        KeyError: HTTPStatus.NOT_FOUND,
        PermissionError: HTTPStatus.FORBIDDEN,
        TimeoutError: HTTPStatus.GATEWAY_TIMEOUT,
    }

    for exc_type, status in exception_status_map.items():
        if isinstance(exc, exc_type):
            return status

    return HTTPStatus.INTERNAL_SERVER_ERROR
