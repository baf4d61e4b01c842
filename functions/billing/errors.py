"""
Billing error taxonomy.

Every error carries the HTTP status the surrounding handler should answer
with and whether the failure is worth retrying (the webhook dispatcher asks
the processor to redeliver only for retryable errors).
"""

from typing import Optional


class BillingError(Exception):
    """Base class for billing errors."""

    status_code = 500
    code = "internal_error"
    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[dict] = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationError(BillingError):
    """Raised for malformed or missing required input."""

    status_code = 400
    code = "validation_error"

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        self.errors = errors or [message]
        super().__init__(message, details={"errors": self.errors})


class AuthorizationError(BillingError):
    """Raised when the bearer credential is missing or invalid."""

    status_code = 401
    code = "unauthorized"

    def __init__(self, message: str = "Authorization token is required"):
        super().__init__(message)


class ForbiddenError(BillingError):
    """Raised when a user acts on another user's billing data."""

    status_code = 403
    code = "forbidden"


class NotFoundError(BillingError):
    """Raised when a referenced entity does not exist."""

    status_code = 404
    code = "not_found"


class ConflictError(BillingError):
    """Raised when a row or customer link was created concurrently."""

    status_code = 409
    code = "conflict"


class PlanResolutionError(BillingError):
    """Raised when a price id does not resolve to a plan."""

    status_code = 400
    code = "invalid_price"

    def __init__(self, price_id: str):
        self.price_id = price_id
        super().__init__(f"Invalid price ID: {price_id}")


class SignatureError(BillingError):
    """Raised when webhook signature verification fails. Never retried."""

    status_code = 400
    code = "invalid_signature"


class StorageError(BillingError):
    """Raised when persistence is unavailable."""

    status_code = 500
    code = "storage_unavailable"
    retryable = True


class PaymentServiceError(BillingError):
    """Raised when the payment processor is unreachable or rate limiting."""

    status_code = 502
    code = "payment_service_unavailable"
    retryable = True


class PaymentConfigurationError(BillingError):
    """Raised when the processor refuses the configured API key."""

    status_code = 500
    code = "configuration_error"
    retryable = True


class PaymentRejectedError(BillingError):
    """Raised when the payment processor rejects a request as invalid."""

    status_code = 400
    code = "payment_request_rejected"


def is_retryable(error: BaseException) -> bool:
    """True when the failure signals storage or service unavailability."""
    return isinstance(error, BillingError) and error.retryable
