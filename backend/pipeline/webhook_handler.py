"""
Webhook Event Handler
=====================
Signed provider events -> deduplicated booking confirmation fan-out.

    received -> signature_verified -> processed | skipped
    received -> rejected

- Signature is checked over the exact raw body BEFORE anything is parsed
- Router pattern: handlers registered per event type, everything else skipped
- Per-session idempotency (try_acquire / mark_completed on the session id), so
  a redelivered or concurrent duplicate never fans out twice
- Fan-out runs persist / customer_email / owner_email concurrently; a failing
  channel is logged and reported, never turned into a non-2xx response
- Paid sessions whose metadata cannot be reconstructed are queued for an
  operator and still acknowledged
- A failed persist is queued too and leaves the session key open, so a
  redelivery retries the upsert without sending the emails again

pip install stripe structlog
"""

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from errors import AuthenticationError, BookingError, ReconciliationError, ValidationError
from pipeline.payment_provider import IPaymentProvider
from pipeline.session_verifier import SessionVerifier
from schemas.booking_definitions import (
    Booking,
    ChannelResult,
    ReconciliationIssue,
    WebhookResult,
    WebhookState,
)
from services.notifications import BookingNotifier
from storage.booking_repository import (
    IBookingRepository,
    IIdempotencyStore,
    IReconciliationQueue,
    InMemoryBookingRepository,
    InMemoryIdempotencyStore,
    InMemoryReconciliationQueue,
)

PAID_SESSION_EVENTS = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)

EventHandler = Callable[[Dict[str, Any], WebhookResult], Awaitable[WebhookResult]]


# =============================================================================
# WEBHOOK ROUTER
# =============================================================================

class WebhookRouter:
    """Maps event types to handlers; unknown types are skipped."""

    def __init__(self):
        self._handlers: Dict[str, EventHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, *event_types: str):
        """Decorator to register a handler for one or more event types"""
        def decorator(handler: EventHandler):
            for event_type in event_types:
                self._handlers[event_type] = handler
                self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    def get(self, event_type: str) -> Optional[EventHandler]:
        return self._handlers.get(event_type)

    @property
    def supported_events(self) -> List[str]:
        return list(self._handlers.keys())


# =============================================================================
# HANDLER
# =============================================================================

class WebhookEventHandler:
    """
    Example:
        handler = WebhookEventHandler(provider, verifier, notifier=notifier)
        result = await handler.handle(raw_body, request.headers.get("stripe-signature"))
        return result.to_response()   # {"received": True}
    """

    def __init__(
        self,
        provider: IPaymentProvider,
        verifier: SessionVerifier,
        repository: Optional[IBookingRepository] = None,
        idempotency: Optional[IIdempotencyStore] = None,
        reconciliation_queue: Optional[IReconciliationQueue] = None,
        notifier: Optional[BookingNotifier] = None,
    ):
        # Dependency injection with defaults
        self.provider = provider
        self.verifier = verifier
        self.repository = repository or InMemoryBookingRepository()
        self.idempotency = idempotency or InMemoryIdempotencyStore()
        self.reconciliation = reconciliation_queue or InMemoryReconciliationQueue()
        self.notifier = notifier

        self.router = WebhookRouter()
        self._register_handlers()

        self._base_logger = structlog.get_logger().bind(component="webhook_handler")

    def _register_handlers(self):
        @self.router.register(*PAID_SESSION_EVENTS)
        async def handle_paid_session(event: Dict[str, Any], result: WebhookResult):
            return await self._on_session_paid(event, result)

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    async def handle(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        result = WebhookResult()
        log = self._base_logger

        # Verify signature BEFORE parsing
        if not signature:
            log.warning("webhook_signature_missing", state=WebhookState.REJECTED.value)
            raise AuthenticationError("Missing Stripe-Signature header", reason="missing_signature")
        try:
            event = self.provider.verify_webhook(payload, signature)
        except BookingError as e:
            log.warning(
                "webhook_rejected",
                state=WebhookState.REJECTED.value,
                reason=e.reason,
                error=e.message,
            )
            raise

        data = event.get("data")
        data_object = data.get("object") if isinstance(data, dict) else None
        if not isinstance(data_object, dict):
            log.warning(
                "webhook_rejected",
                state=WebhookState.REJECTED.value,
                reason="invalid_payload",
                event_id=event.get("id"),
            )
            raise ValidationError("Webhook event has no data object", reason="invalid_payload")

        result = result.model_copy(update={
            "state": WebhookState.SIGNATURE_VERIFIED,
            "event_id": event.get("id"),
            "event_type": event.get("type"),
            "session_id": data_object.get("id"),
        })
        log = log.bind(event_id=result.event_id, event_type=result.event_type, session_id=result.session_id)
        log.info("webhook_received")

        handler = self.router.get(result.event_type or "")
        if handler is None:
            log.info("webhook_skipped", reason="unhandled_event_type")
            return result.model_copy(update={"state": WebhookState.SKIPPED})

        return await handler(event, result)

    # =========================================================================
    # PAID SESSION
    # =========================================================================

    async def _on_session_paid(self, event: Dict[str, Any], result: WebhookResult) -> WebhookResult:
        session = event["data"]["object"]
        session_id = session.get("id")
        log = self._base_logger.bind(event_id=result.event_id, session_id=session_id)

        if session.get("payment_status") != "paid" or not session_id:
            log.info("webhook_skipped", reason="session_not_paid", payment_status=session.get("payment_status"))
            return result.model_copy(update={"state": WebhookState.SKIPPED})

        idempotency_key = f"stripe:session:{session_id}"
        holder_id = str(uuid.uuid4())

        acquired = await self.idempotency.try_acquire(idempotency_key, holder_id)
        if not acquired:
            already_done = await self.idempotency.is_completed(idempotency_key)
            log.info(
                "webhook_duplicate",
                reason="already_processed" if already_done else "processing_elsewhere",
            )
            return result.model_copy(update={"state": WebhookState.PROCESSED, "duplicate": True})

        # Emails are tracked separately so a retried persist never re-sends them
        notified_key = f"{idempotency_key}:notified"

        try:
            try:
                booking = self.verifier.reconstruct_booking(session)
            except ReconciliationError as e:
                await self._queue_reconciliation(e.reason, e.message, result, session, e.details)
                await self.idempotency.mark_completed(idempotency_key, "reconciliation_required")
                return result.model_copy(update={
                    "state": WebhookState.PROCESSED,
                    "needs_attention": True,
                })

            log = log.bind(booking_reference=booking.booking_reference)
            notify = self.notifier is not None and not await self.idempotency.is_completed(notified_key)
            channels = await self._fan_out(booking, log, notify=notify)

            if notify and await self.idempotency.try_acquire(notified_key, holder_id):
                await self.idempotency.mark_completed(notified_key, booking.booking_reference)

            persisted = next(c for c in channels if c.channel == "persist")
            if not persisted.ok:
                # Key goes back so a redelivery retries the upsert
                await self._queue_reconciliation(
                    "persist_failed",
                    "Paid booking could not be stored",
                    result,
                    session,
                    {"booking_reference": booking.booking_reference, "error": persisted.error},
                )
                await self.idempotency.release(idempotency_key, holder_id)
                return result.model_copy(update={
                    "state": WebhookState.PROCESSED,
                    "booking_reference": booking.booking_reference,
                    "channels": channels,
                    "needs_attention": True,
                })

            await self.idempotency.mark_completed(idempotency_key, booking.booking_reference)
            log.info(
                "webhook_processed",
                channels={c.channel: c.ok for c in channels},
                pricing_drift=booking.pricing_drift,
            )
            return result.model_copy(update={
                "state": WebhookState.PROCESSED,
                "booking_reference": booking.booking_reference,
                "channels": channels,
            })

        except Exception:
            # Release on failure so a redelivery can retry
            await self.idempotency.release(idempotency_key, holder_id)
            await self.idempotency.release(notified_key, holder_id)
            raise

    async def _queue_reconciliation(
        self,
        reason: str,
        message: str,
        result: WebhookResult,
        session: Dict[str, Any],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._base_logger.critical(
            "reconciliation_required",
            event_id=result.event_id,
            session_id=session.get("id"),
            reason=reason,
            error=message,
            details=details,
        )
        await self.reconciliation.enqueue(ReconciliationIssue(
            event_id=result.event_id,
            session_id=session.get("id"),
            reason=reason,
            message=message,
            metadata=dict(session.get("metadata") or {}),
            amount_total=session.get("amount_total"),
        ))

    # =========================================================================
    # FAN-OUT
    # =========================================================================

    async def _run_channel(self, name: str, work: Awaitable[Optional[str]], log) -> ChannelResult:
        try:
            detail = await work
        except Exception as e:
            log.error("fanout_channel_failed", channel=name, error=str(e), error_type=type(e).__name__)
            return ChannelResult(channel=name, ok=False, error=str(e))
        return ChannelResult(channel=name, ok=True, detail=detail)

    async def _persist(self, booking: Booking) -> str:
        created = await self.repository.upsert(booking)
        return "created" if created else "updated"

    async def _customer_email(self, booking: Booking) -> str:
        record = await self.notifier.send_customer_confirmation(booking)
        return record.message_id or record.status.value

    async def _owner_email(self, booking: Booking) -> str:
        record = await self.notifier.send_owner_notification(booking)
        return record.message_id or record.status.value

    async def _fan_out(self, booking: Booking, log, notify: bool = True) -> List[ChannelResult]:
        tasks = [self._run_channel("persist", self._persist(booking), log)]
        if notify:
            tasks.append(self._run_channel("customer_email", self._customer_email(booking), log))
            tasks.append(self._run_channel("owner_email", self._owner_email(booking), log))
        elif self.notifier is None:
            log.warning("notifications_disabled")
        else:
            log.info("notifications_already_sent")
        return list(await asyncio.gather(*tasks))

    # =========================================================================
    # ADMIN
    # =========================================================================

    async def get_reconciliation_issues(self, limit: int = 100) -> List[ReconciliationIssue]:
        return await self.reconciliation.get_pending(limit)

    async def get_reconciliation_stats(self) -> Dict[str, int]:
        return await self.reconciliation.get_stats()
