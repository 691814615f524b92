"""
Error taxonomy for the payment-link service.

Every error maps to one HTTP status and a stable error code so the API
handlers in main.py can render them uniformly.
"""
from typing import Optional, Dict, Any


class PaymentLinkError(Exception):
    """Base exception for all service errors."""

    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(PaymentLinkError):
    """
    Missing or malformed input.

    Examples:
    - Required payment link fields absent
    - Non-positive amount
    - Unknown status value in an administrative update
    """

    status_code = 400
    error_code = "validation_error"


class NotFoundError(PaymentLinkError):
    """Unknown brand, payment, or contact request."""

    status_code = 404
    error_code = "not_found"


class ExpiredError(PaymentLinkError):
    """Payment link read after the expiry window while still pending."""

    status_code = 410
    error_code = "payment_expired"


class ConflictError(PaymentLinkError):
    """
    Operation not valid for the current state.

    Examples:
    - Capture attempted on an order that is already captured or not approved
    - Refund requested for a payment that never completed
    - Checkout re-initialized on a finished payment
    """

    status_code = 409
    error_code = "conflict"


class ProcessorError(PaymentLinkError):
    """External payment processor failure (network, auth, or rejected request)."""

    status_code = 502
    error_code = "processor_error"
