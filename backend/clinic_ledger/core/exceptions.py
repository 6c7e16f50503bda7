"""
Custom exceptions for the application.
Project: Clinic Ledger

Domain exceptions translated to HTTP responses by the handlers in main.py.
Every ledger operation either returns normally or raises exactly one of:

- NotFoundError: the referenced record does not exist (404)
- AuthorizationError: the record exists but the actor may not touch it (403)
- BusinessValidationError: input or state violates a ledger rule (422)

NOTE: BusinessValidationError is distinct from pydantic.ValidationError.
- pydantic.ValidationError: malformed input shape/types (FastAPI → 422)
- BusinessValidationError: ledger rule violations (our handler → 422)
"""

from typing import Any, Dict, Optional

__all__ = [
    "AppException",
    "NotFoundError",
    "BusinessValidationError",
    "ValidationError",       # alias of BusinessValidationError
    "ConflictError",
    "AuthorizationError",
    "AuthenticationError",
]


class AppException(Exception):
    """
    Base exception for the application.

    Attributes:
        status_code: HTTP status code returned to the client
        error_code: Stable error identifier for API consumers
        detail: Human readable message
        extra: Optional payload with additional data
    """

    # Default values - overridden in subclasses
    status_code: int = 500
    error_code: str = "INTERNAL_SERVER_ERROR"

    def __init__(
        self,
        detail: str,
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.detail = detail
        self.error_code = error_code if error_code is not None else self.error_code
        self.extra = extra
        self.status_code = self.__class__.status_code
        super().__init__(detail)


class NotFoundError(AppException):
    """Raised when an invoice, patient, product, appointment or credit note id does not resolve."""

    status_code: int = 404
    error_code: str = "RESOURCE_NOT_FOUND"

    def __init__(
        self,
        detail: str = "Resource not found",
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(detail, error_code, extra)


class BusinessValidationError(ValueError, AppException):
    """
    Raised when a request violates a ledger rule.

    Inherits from ValueError so it can be raised from Pydantic validators.

    Examples:
        - "Insufficient stock for Paracetamol. Available: 3"
        - "Credit note has no remaining balance"
        - "Appointment already has an invoice"
    """

    status_code: int = 422
    error_code: str = "BUSINESS_VALIDATION_ERROR"

    def __init__(
        self,
        detail: str = "Validation failed",
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        # Call AppException.__init__ directly to skip ValueError
        AppException.__init__(self, detail, error_code, extra)


# Alias
ValidationError = BusinessValidationError


class ConflictError(AppException):
    """
    Raised when the database rejects a write.

    Unique and check constraint violations at commit time end up here, as
    does a row changed by a concurrent request since it was read.
    """

    status_code: int = 409
    error_code: str = "CONFLICT_STATE"

    def __init__(
        self,
        detail: str = "State conflict",
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(detail, error_code, extra)


class AuthorizationError(AppException):
    """
    Raised when the actor lacks a capability or does not own the invoice.

    Examples:
        - "You do not have permission to create invoices"
        - "You do not have access to this invoice"
    """

    status_code: int = 403
    error_code: str = "FORBIDDEN"

    def __init__(
        self,
        detail: str = "Access denied",
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(detail, error_code, extra)


class AuthenticationError(AppException):
    """Raised when the request carries no usable actor identity."""

    status_code: int = 401
    error_code: str = "UNAUTHENTICATED"

    def __init__(
        self,
        detail: str = "Authentication required",
        error_code: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(detail, error_code, extra)
