"""
Shared error handling for the Entitlement Platform.

Every failure that can cross a component boundary is a subclass of
``PlatformException``. Each carries a stable ``code`` and the HTTP status the
service layer answers with. Store operations that have an expected failure
mode return a ``StoreResult`` instead of raising.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

from pydantic import BaseModel

from shared.logging import request_id_var


T = TypeVar("T")


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class PlatformException(Exception):
    """Base exception for Entitlement Platform services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthenticityError(PlatformException):
    """Webhook signature missing, invalid or stale.

    The response body never says which check failed.
    """

    def __init__(self, message: str = "Invalid signature", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICITY_ERROR", message, details)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message="Invalid signature",
        )


class AuthenticationError(PlatformException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class AuthorizationError(PlatformException):
    """Authorization-related errors."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class ValidationError(PlatformException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(PlatformException):
    """Requested record does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConflictError(PlatformException):
    """Write rejected by a uniqueness constraint."""

    status_code = 409

    def __init__(self, message: str = "Conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, details)


class RateLimitError(PlatformException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ):
        super().__init__("RATE_LIMIT_ERROR", message, details)
        self.headers = headers or {}


class HandlerError(PlatformException):
    """Event handler failed; the routing transaction must roll back."""

    status_code = 500

    def __init__(self, message: str = "Event handler failed", details: Optional[Dict[str, Any]] = None,
                 code: str = "HANDLER_ERROR"):
        super().__init__(code, message, details)


class UnknownPlanError(HandlerError):
    """Plan or provider price id does not resolve to an active plan."""

    def __init__(self, message: str = "Unknown plan", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="UNKNOWN_PLAN")


class InvalidTransitionError(HandlerError):
    """Entitlement status change not permitted."""

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot transition entitlement from {current} to {target}",
            {"current": current, "target": target},
            code="INVALID_TRANSITION"
        )


class EntitlementNotFoundError(HandlerError):
    """No entitlement linked to the provider object yet."""

    def __init__(self, message: str = "Entitlement not found", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="ENTITLEMENT_NOT_FOUND")


class StoreUnavailable(PlatformException):
    """Durable store could not be reached."""

    status_code = 503

    def __init__(self, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", message, details)


class CacheUnavailable(PlatformException):
    """Cache substrate could not be reached. Never leaves the cache layer."""

    status_code = 503

    def __init__(self, message: str = "Cache unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_UNAVAILABLE", message, details)


class InternalError(PlatformException):
    """Unexpected failure; the caller may retry."""

    status_code = 500

    def __init__(self, message: str = "Internal error", details: Optional[Dict[str, Any]] = None):
        super().__init__("INTERNAL_ERROR", message, details)


class ServiceError(PlatformException):
    """Service-related errors."""

    status_code = 500

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)


class FailureKind(str, Enum):
    """Expected store failure modes."""
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TRANSIENT = "transient"


@dataclass
class StoreResult(Generic[T]):
    """Outcome of a store operation: a value or one failure kind."""

    value: Optional[T] = None
    failure: Optional[FailureKind] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: T) -> "StoreResult[T]":
        return cls(value=value)

    @classmethod
    def not_found(cls, message: str = "Not found") -> "StoreResult[T]":
        return cls(failure=FailureKind.NOT_FOUND, message=message)

    @classmethod
    def conflict(cls, message: str = "Conflict") -> "StoreResult[T]":
        return cls(failure=FailureKind.CONFLICT, message=message)

    @classmethod
    def transient(cls, message: str = "Store unavailable") -> "StoreResult[T]":
        return cls(failure=FailureKind.TRANSIENT, message=message)

    def raise_for_failure(self) -> T:
        """Return the value or raise the matching platform exception."""
        if self.failure is FailureKind.NOT_FOUND:
            raise NotFoundError(self.message)
        if self.failure is FailureKind.CONFLICT:
            raise ConflictError(self.message)
        if self.failure is FailureKind.TRANSIENT:
            raise StoreUnavailable(self.message)
        return self.value
