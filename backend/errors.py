# errors.py
# ============================================================================
# LUGGAGE DEPOSIT BOOKING BACKEND: ERROR TAXONOMY
# ============================================================================
# Every error that crosses a component boundary is a BookingError carrying
# the HTTP status it maps to and a machine-readable reason.
# ============================================================================

from typing import Any, Dict, Optional


class BookingError(Exception):
    """Base class for all booking domain errors."""

    status_code: int = 500
    default_reason: str = "internal_error"

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason or self.default_reason
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "reason": self.reason}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(BookingError):
    """Client input is malformed or out of policy."""

    status_code = 400
    default_reason = "invalid_request"


class NotFoundError(BookingError):
    """The provider does not know the requested session."""

    status_code = 404
    default_reason = "not_found"


class PaymentNotCompletedError(BookingError):
    """A paid-only resource was requested for an unpaid session."""

    status_code = 403
    default_reason = "payment_not_completed"


class AuthenticationError(BookingError):
    """Webhook signature missing or mismatched."""

    status_code = 400
    default_reason = "invalid_signature"


class ExternalServiceError(BookingError):
    """Payment provider, email provider or document generator failed."""

    status_code = 500
    default_reason = "external_service_error"

    def __init__(
        self,
        message: str,
        service: str,
        retryable: bool = False,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, reason=reason, details=details)
        self.service = service
        self.retryable = retryable


class ReconciliationError(BookingError):
    """A paid session whose metadata cannot be turned back into a booking."""

    status_code = 500
    default_reason = "reconciliation_required"


class ConfigurationError(BookingError):
    """A required setting or secret is missing."""

    status_code = 500
    default_reason = "configuration_error"


class FeatureUnavailableError(BookingError):
    """An optional integration is not configured on this deployment."""

    status_code = 503
    default_reason = "feature_unavailable"


__all__ = [
    "BookingError",
    "ValidationError",
    "NotFoundError",
    "PaymentNotCompletedError",
    "AuthenticationError",
    "ExternalServiceError",
    "ReconciliationError",
    "ConfigurationError",
    "FeatureUnavailableError",
]
