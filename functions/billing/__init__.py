# Shared billing package
from .errors import (
    AuthorizationError,
    BillingError,
    NotFoundError,
    PlanResolutionError,
    SignatureError,
    StorageError,
    ValidationError,
)
from .response_utils import custom_response, error_response

__all__ = [
    "BillingError",
    "ValidationError",
    "AuthorizationError",
    "NotFoundError",
    "PlanResolutionError",
    "SignatureError",
    "StorageError",
    "custom_response",
    "error_response",
]
