"""
Error taxonomy for the booking core.

Every error is an ``HTTPException`` so routers can let it propagate; the
handlers in ``main.py`` render it into the standard response envelope.
"""
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status


class BookingError(HTTPException):
    """Base class for all errors raised by the booking core."""

    status_code = status.HTTP_400_BAD_REQUEST
    code = "ERROR"
    default_message = "Request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message or self.default_message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(
            status_code=self.status_code,
            detail=self.message,
            headers=headers,
        )

    def to_error(self) -> Dict[str, Any]:
        error = {"code": self.code}
        if self.details:
            error["details"] = self.details
        return error


class ValidationError(BookingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    default_message = "Invalid request data"


class AuthenticationError(BookingError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHENTICATED"
    default_message = "Could not validate credentials"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message, headers={"WWW-Authenticate": "Bearer"})


class AuthorizationError(BookingError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"
    default_message = "Not enough permissions"


class NotFoundError(BookingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "The requested resource was not found"


class ConflictError(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"
    default_message = "The request conflicts with the current state"


class SlotUnavailableError(ConflictError):
    code = "SLOT_UNAVAILABLE"
    default_message = "Selected time slot is no longer available"

    def __init__(self, message: Optional[str] = None, alternatives: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.alternatives = alternatives or []

    def to_error(self) -> Dict[str, Any]:
        error = super().to_error()
        error["alternatives"] = self.alternatives
        return error


class DuplicateTreatmentPlan(ConflictError):
    code = "DUPLICATE_TREATMENT_PLAN"
    default_message = "A treatment plan already exists for this appointment"


class DuplicateRefundError(ConflictError):
    code = "DUPLICATE_REFUND"
    default_message = "Refund request already exists for this appointment"


class StateError(BookingError):
    status_code = status.HTTP_409_CONFLICT
    code = "INVALID_TRANSITION"
    default_message = "Transition is not allowed from the current state"


class NotPaidError(StateError):
    code = "NOT_PAID"
    default_message = "No payment found for this appointment"


class PaymentError(BookingError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED
    code = "PAYMENT_FAILED"
    default_message = "Payment could not be processed"


class RateLimitError(BookingError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMITED"
    default_message = "Too many requests. Please try again later."
