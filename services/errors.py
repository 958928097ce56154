from typing import Any, Optional


class BookingError(Exception):
    """Base error for the booking backend, rendered by the API error handler"""

    status_code = 500
    code = "error"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.message, "code": self.code}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(BookingError):
    """Raised when required booking fields are missing or invalid"""
    status_code = 400
    code = "validation_error"


class InvalidInput(ValidationError):
    """Raised by the cost calculator for negative or non-finite inputs"""
    code = "invalid_input"


class NotFound(BookingError):
    status_code = 404
    code = "not_found"


class Forbidden(BookingError):
    status_code = 403
    code = "forbidden"


class Unauthorized(BookingError):
    status_code = 401
    code = "unauthorized"


class ConflictError(BookingError):
    """Raised for invalid state transitions, e.g. mutating a cancelled booking"""
    status_code = 400
    code = "conflict"


class PaymentError(BookingError):
    """Base for payment provider integration failures"""

    status_code = 502
    code = "payment_error"

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        body: Optional[Any] = None,
        details: Optional[Any] = None,
    ):
        super().__init__(message, details=details)
        self.status = status
        self.body = body
        if self.details is None and (status is not None or body is not None):
            self.details = {"status": status, "body": body}


class AuthError(PaymentError):
    """Raised when no auth token could be obtained from the payment provider"""
    code = "gateway_auth_failed"


class GatewayError(PaymentError):
    """Raised when an order/status call fails, including timeouts"""
    code = "gateway_error"


class NoRedirectTarget(PaymentError):
    """Raised when the provider accepts an order but gives no redirect or embed target"""
    code = "no_redirect_target"

    def __init__(self, message: str, order: Optional[Any] = None, **kwargs):
        super().__init__(message, **kwargs)
        # OrderResult for the accepted order, kept for later reconciliation
        self.order = order


class InternalError(BookingError):
    status_code = 500
    code = "internal_error"
