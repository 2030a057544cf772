"""
Payment Provider
================
Thin async boundary around Stripe Checkout.

The rest of the pipeline only sees plain dicts and domain errors:
- create / retrieve checkout sessions (bounded timeout, no SDK retries)
- verify webhook signatures against the exact raw body

One StripeClient is built per process and injected, instead of the global
`stripe.api_key` module state.

pip install stripe httpx structlog
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import stripe
import structlog

from errors import AuthenticationError, ExternalServiceError, NotFoundError, ValidationError

SIGNATURE_TOLERANCE_SECONDS = 300

# Errors worth a second attempt on read paths
TRANSIENT_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


def to_plain_dict(obj: Any) -> Dict[str, Any]:
    """StripeObject -> plain JSON-compatible dict."""
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return json.loads(str(obj))


# =============================================================================
# INTERFACE
# =============================================================================

class IPaymentProvider(ABC):
    """Hosted checkout provider interface"""

    @abstractmethod
    async def create_checkout_session(
        self, params: Dict[str, Any], idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create one hosted checkout session. Returns at least `id` and `url`."""
        pass

    @abstractmethod
    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        """Fetch a session. Raises NotFoundError or ExternalServiceError."""
        pass

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """Check the signature over the raw body and return the parsed event."""
        pass


# =============================================================================
# STRIPE
# =============================================================================

class StripePaymentProvider(IPaymentProvider):
    """
    Stripe Checkout through a dedicated StripeClient.

    Example:
        provider = StripePaymentProvider(api_key="sk_test_...", webhook_secret="whsec_...")
        session = await provider.create_checkout_session(params, idempotency_key="abc")
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        timeout_seconds: float = 8.0,
        client: Optional[stripe.StripeClient] = None,
    ):
        self._webhook_secret = webhook_secret
        self._client = client or stripe.StripeClient(
            api_key,
            http_client=stripe.HTTPXClient(timeout=timeout_seconds),
            max_network_retries=0,
        )
        self._logger = structlog.get_logger().bind(component="payment_provider")

    async def create_checkout_session(
        self, params: Dict[str, Any], idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            session = await self._client.v1.checkout.sessions.create_async(
                params=params, options=options
            )
        except stripe.StripeError as e:
            # Session creation is not retried: the client resubmits with the same key
            raise self._translate(e, "create_checkout_session", retryable=False) from e
        return to_plain_dict(session)

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        try:
            session = await self._client.v1.checkout.sessions.retrieve_async(session_id)
        except stripe.StripeError as e:
            raise self._translate(
                e,
                "retrieve_checkout_session",
                retryable=isinstance(e, TRANSIENT_ERRORS),
                session_id=session_id,
            ) from e
        return to_plain_dict(session)

    def verify_webhook(self, payload: bytes, signature: str) -> Dict[str, Any]:
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ValidationError("Webhook body is not UTF-8", reason="invalid_payload") from e

        try:
            stripe.WebhookSignature.verify_header(
                text, signature, self._webhook_secret, tolerance=SIGNATURE_TOLERANCE_SECONDS
            )
        except stripe.SignatureVerificationError as e:
            raise AuthenticationError("Invalid webhook signature") from e

        try:
            event = json.loads(text)
        except ValueError as e:
            raise ValidationError("Webhook body is not valid JSON", reason="invalid_payload") from e
        if not isinstance(event, dict):
            raise ValidationError("Webhook body is not an event object", reason="invalid_payload")
        return event

    def _translate(
        self,
        error: stripe.StripeError,
        operation: str,
        retryable: bool,
        session_id: Optional[str] = None,
    ) -> Exception:
        code = getattr(error, "code", None)
        if isinstance(error, stripe.InvalidRequestError) and code == "resource_missing":
            return NotFoundError("Checkout session not found", details={"session_id": session_id})
        if isinstance(error, stripe.IdempotencyError):
            self._logger.warning("stripe_idempotency_conflict", operation=operation, error=str(error))
            return ValidationError(
                "Idempotency key was already used for a different booking",
                reason="idempotency_key_reused",
            )

        self._logger.error(
            "stripe_call_failed",
            operation=operation,
            session_id=session_id,
            error=str(error),
            error_type=type(error).__name__,
            code=code,
            retryable=retryable,
        )
        return ExternalServiceError(
            "Payment provider request failed",
            service="stripe",
            retryable=retryable,
        )
