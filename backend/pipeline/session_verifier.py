"""
Session Verifier
================
Answers "has this checkout session been paid, and for what booking?".

Side-effect free: it reads the provider session and rebuilds the booking from
its metadata, re-running the pricing engine to cross-check what was charged.
It never writes to the repository, so repeated calls return identical data.

pip install stripe structlog
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog

from errors import ExternalServiceError, PaymentNotCompletedError, ReconciliationError, ValidationError
from pipeline.metadata import decode_metadata
from pipeline.payment_provider import IPaymentProvider
from pipeline.pricing import from_minor_units, parse_calendar_date, quote, to_minor_units
from schemas.booking_definitions import (
    Booking,
    Customer,
    DateRange,
    PaymentStatus,
    SessionPaymentStatus,
    VerificationResult,
)


def _created_at(session: Dict[str, Any]) -> datetime:
    created = session.get("created")
    if isinstance(created, (int, float)):
        return datetime.fromtimestamp(created, tz=timezone.utc)
    # Stripe always sends `created`; hand-built sessions may not
    return datetime.now(timezone.utc)


def _customer_email(session: Dict[str, Any], fallback: str) -> str:
    details = session.get("customer_details") or {}
    return fallback or details.get("email") or session.get("customer_email") or ""


class SessionVerifier:
    """
    Example:
        verifier = SessionVerifier(provider)
        result = await verifier.verify("cs_test_...")
        if result.payment_status == SessionPaymentStatus.PAID:
            print(result.booking.booking_reference)
    """

    def __init__(
        self,
        provider: IPaymentProvider,
        max_retries: int = 1,
        retry_delay_seconds: float = 0.25,
        currency: str = "eur",
    ):
        self.provider = provider
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.currency = currency
        self._logger = structlog.get_logger().bind(component="session_verifier")

    # =========================================================================
    # PROVIDER READS
    # =========================================================================

    async def fetch_session(self, session_id: str) -> Dict[str, Any]:
        """Retrieve a session, retrying transient failures."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.provider.retrieve_checkout_session(session_id)
            except ExternalServiceError as e:
                if not e.retryable or attempt > self.max_retries:
                    self._logger.error(
                        "session_fetch_failed",
                        session_id=session_id,
                        attempts=attempt,
                    )
                    raise ExternalServiceError(
                        "Could not verify the payment session, please retry",
                        service=e.service,
                        retryable=True,
                        reason="verification_unavailable",
                    ) from e
                self._logger.warning(
                    "session_fetch_retry",
                    session_id=session_id,
                    attempt=attempt,
                )
                await asyncio.sleep(self.retry_delay_seconds * attempt)

    # =========================================================================
    # RECONSTRUCTION
    # =========================================================================

    def reconstruct_booking(self, session: Dict[str, Any]) -> Booking:
        """
        Rebuild a paid booking from the session metadata.

        The quote is recomputed from the stored dates and quantities; when it
        disagrees with the stored day count or with the amount actually
        charged, the booking is flagged with `pricing_drift`. `total_price`
        is always the amount paid.
        """
        session_id = session.get("id")
        decoded = decode_metadata(session.get("metadata"), session_id=session_id)

        recomputed = quote(decoded.drop_off_date, decoded.pick_up_date, decoded.bag_quantities)
        if recomputed.billable_days < 1 or decoded.bag_quantities.total < 1:
            raise ReconciliationError(
                "Session metadata describes an invalid booking",
                reason="corrupt_metadata",
                details={
                    "session_id": session_id,
                    "billable_days": recomputed.billable_days,
                    "bags": decoded.bag_quantities.total,
                },
            )

        email = _customer_email(session, decoded.customer_email)
        if not email:
            raise ReconciliationError(
                "Session carries no customer email",
                reason="missing_metadata",
                details={"session_id": session_id, "missing": ["customerEmail"]},
            )

        amount_total = session.get("amount_total")
        if isinstance(amount_total, int):
            paid = from_minor_units(amount_total)
            amount_matches = amount_total == to_minor_units(recomputed.total_price)
        else:
            paid = recomputed.total_price
            amount_matches = True

        days_match = decoded.billable_days is None or decoded.billable_days == recomputed.billable_days
        drift = not days_match or not amount_matches
        if drift:
            self._logger.warning(
                "pricing_drift",
                session_id=session_id,
                booking_reference=decoded.booking_reference,
                stored_days=decoded.billable_days,
                recomputed_days=recomputed.billable_days,
                amount_total=amount_total,
                recomputed_total=str(recomputed.total_price),
            )

        # A positive day count means both dates parsed and are ordered
        date_range = DateRange(
            drop_off_date=parse_calendar_date(decoded.drop_off_date),
            pick_up_date=parse_calendar_date(decoded.pick_up_date),
            drop_off_time=decoded.drop_off_time,
            pick_up_time=decoded.pick_up_time,
        )

        return Booking(
            booking_reference=decoded.booking_reference,
            customer=Customer(
                name=decoded.customer_name,
                email=email,
                phone=decoded.customer_phone,
            ),
            date_range=date_range,
            bag_quantities=decoded.bag_quantities,
            billable_days=recomputed.billable_days,
            per_day_subtotal=recomputed.per_day_subtotal,
            total_price=paid,
            currency=session.get("currency") or self.currency,
            payment_status=PaymentStatus.PAID,
            provider_session_id=session_id,
            created_at=_created_at(session),
            pricing_drift=drift,
            site_url=decoded.site_url,
        )

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def verify(self, session_id: Optional[str]) -> VerificationResult:
        if not session_id or not str(session_id).strip():
            raise ValidationError("Missing session_id", reason="missing_session_id")
        session_id = str(session_id).strip()

        session = await self.fetch_session(session_id)
        status = session.get("payment_status")
        if status != "paid":
            self._logger.info("session_unpaid", session_id=session_id, payment_status=status)
            return VerificationResult(payment_status=SessionPaymentStatus.UNPAID)

        try:
            booking = self.reconstruct_booking(session)
        except ReconciliationError as e:
            self._logger.critical(
                "reconciliation_required",
                session_id=session_id,
                reason=e.reason,
                details=e.details,
            )
            raise

        self._logger.info(
            "session_verified",
            session_id=session_id,
            booking_reference=booking.booking_reference,
        )
        return VerificationResult(payment_status=SessionPaymentStatus.PAID, booking=booking)

    async def require_paid_booking(self, session_id: Optional[str]) -> Booking:
        """Booking for a paid session; PaymentNotCompletedError otherwise."""
        result = await self.verify(session_id)
        if result.booking is None:
            raise PaymentNotCompletedError("Payment not confirmed")
        return result.booking

