"""
Luggage Deposit Booking Server
==============================
FastAPI application exposing the booking flow:
- Checkout session creation and price quotes
- Session verification, PDF receipt and Google Wallet link for paid sessions
- Stripe webhook (raw body, signature verified)
- Operator view of queued reconciliation issues
- Health monitoring

Collaborators (payment provider, repository, email sender, wallet issuer) are
built once in create_app() and can be injected for tests.

pip install fastapi uvicorn pydantic structlog stripe httpx
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import quote as url_quote
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response

from config import BookingConfig, configure_logging
from errors import (
    BookingError,
    ExternalServiceError,
    FeatureUnavailableError,
    ValidationError,
)
from pipeline.checkout_builder import CheckoutSessionBuilder, parse_bag_quantities
from pipeline.payment_provider import IPaymentProvider, StripePaymentProvider
from pipeline.pricing import quote
from pipeline.session_verifier import SessionVerifier
from pipeline.webhook_handler import WebhookEventHandler
from schemas.booking_definitions import RoutingMode
from services.notifications import BookingNotifier, IEmailSender, SendGridEmailSender
from services.receipt_pdf import render_receipt_pdf
from services.wallet import GoogleWalletIssuer
from storage.booking_repository import (
    IBookingRepository,
    IIdempotencyStore,
    IReconciliationQueue,
    InMemoryBookingRepository,
    InMemoryIdempotencyStore,
    InMemoryReconciliationQueue,
    PostgresBookingRepository,
)

VERSION = "1.0.0"

logger = structlog.get_logger(component="server")


# =============================================================================
# SERVICES
# =============================================================================

@dataclass
class BookingServices:
    """Everything the routes need, created once per process."""
    config: BookingConfig
    provider: IPaymentProvider
    repository: IBookingRepository
    builder: CheckoutSessionBuilder
    verifier: SessionVerifier
    webhooks: WebhookEventHandler
    notifier: BookingNotifier
    wallet: Optional[GoogleWalletIssuer]
    started_at: datetime


def _services(request: Request) -> BookingServices:
    return request.app.state.services


def build_services(
    config: BookingConfig,
    provider: Optional[IPaymentProvider] = None,
    repository: Optional[IBookingRepository] = None,
    email_sender: Optional[IEmailSender] = None,
    idempotency: Optional[IIdempotencyStore] = None,
    reconciliation_queue: Optional[IReconciliationQueue] = None,
    wallet: Optional[GoogleWalletIssuer] = None,
) -> BookingServices:
    # Missing secrets fail here, at startup, not on the first payment
    if provider is None:
        provider = StripePaymentProvider(
            api_key=config.require("stripe_secret_key"),
            webhook_secret=config.require("stripe_webhook_secret"),
            timeout_seconds=config.provider_timeout_seconds,
        )

    if email_sender is None:
        email_sender = SendGridEmailSender(
            api_key=config.require("sendgrid_api_key"),
            default_from=config.require("email_from"),
        )

    if repository is None:
        if config.database_url:
            repository = PostgresBookingRepository(
                config.database_url,
                min_size=config.db_min_pool_size,
                max_size=config.db_max_pool_size,
            )
        else:
            logger.warning("database_not_configured", fallback="in_memory")
            repository = InMemoryBookingRepository()

    if wallet is None and config.wallet_enabled:
        wallet = GoogleWalletIssuer(
            issuer_id=config.wallet_issuer_id,
            service_account_email=config.wallet_service_account_email,
            private_key=config.wallet_private_key,
        )
    if wallet is None:
        logger.info("wallet_disabled")

    verifier = SessionVerifier(
        provider,
        max_retries=config.verify_max_retries,
        currency=config.currency,
    )
    notifier = BookingNotifier(
        sender=email_sender,
        owner_email=config.require("owner_email"),
        email_from=config.email_from,
        wallet=wallet,
        public_base_url=config.public_base_url,
    )
    return BookingServices(
        config=config,
        provider=provider,
        repository=repository,
        builder=CheckoutSessionBuilder(
            provider,
            currency=config.currency,
            routing_mode=RoutingMode(config.routing_mode),
            public_base_url=config.public_base_url,
        ),
        verifier=verifier,
        webhooks=WebhookEventHandler(
            provider,
            verifier,
            repository=repository,
            idempotency=idempotency or InMemoryIdempotencyStore(),
            reconciliation_queue=reconciliation_queue or InMemoryReconciliationQueue(),
            notifier=notifier,
        ),
        notifier=notifier,
        wallet=wallet,
        started_at=datetime.now(timezone.utc),
    )


# =============================================================================
# HELPERS
# =============================================================================

async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be valid JSON", reason="invalid_request") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object", reason="invalid_request")
    return body


def _origin(request: Request, config: BookingConfig) -> str:
    if config.public_base_url:
        return config.public_base_url
    origin = request.headers.get("origin")
    if origin and origin != "null":
        return origin.rstrip("/")
    return str(request.base_url).rstrip("/")


def _session_id_from_body(body: Dict[str, Any]) -> Optional[str]:
    value = body.get("sessionId") or body.get("session_id")
    return value if isinstance(value, str) else None


# =============================================================================
# ROUTES
# =============================================================================

def register_routes(app: FastAPI) -> None:

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    @app.get("/health")
    async def health_check(request: Request):
        services = _services(request)
        uptime = (datetime.now(timezone.utc) - services.started_at).total_seconds()
        return {
            "status": "healthy",
            "version": VERSION,
            "uptime_seconds": round(uptime, 3),
            "bookings": await services.repository.count(),
            "storage": type(services.repository).__name__,
            "wallet_enabled": services.wallet is not None,
        }

    @app.get("/ready")
    async def readiness_check():
        """Kubernetes readiness probe"""
        return {"ready": True}

    @app.get("/live")
    async def liveness_check():
        """Kubernetes liveness probe"""
        return {"live": True}

    # -------------------------------------------------------------------------
    # Quote & checkout
    # -------------------------------------------------------------------------

    @app.post("/api/quote")
    async def price_quote(request: Request):
        body = await _json_body(request)
        quantities = parse_bag_quantities(body.get("bagQuantities"))
        result = quote(body.get("dropOffDate"), body.get("pickUpDate"), quantities)
        return result.model_dump(mode="json", by_alias=True)

    @app.post("/api/create-checkout-session")
    async def create_checkout_session(request: Request):
        services = _services(request)
        body = await _json_body(request)
        idempotency_key = request.headers.get("idempotency-key") or body.get("idempotencyKey")

        descriptor = await services.builder.build(
            body,
            origin=_origin(request, services.config),
            idempotency_key=idempotency_key if isinstance(idempotency_key, str) else None,
        )
        return {
            "redirectUrl": descriptor.redirect_url,
            "bookingReference": descriptor.booking_reference,
        }

    # -------------------------------------------------------------------------
    # Verification & documents
    # -------------------------------------------------------------------------

    @app.get("/api/verify-session")
    async def verify_session_get(request: Request, session_id: Optional[str] = None):
        result = await _services(request).verifier.verify(session_id)
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    @app.post("/api/verify-session")
    async def verify_session_post(request: Request):
        body = await _json_body(request)
        result = await _services(request).verifier.verify(_session_id_from_body(body))
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    @app.get("/api/booking-pdf")
    async def booking_pdf(request: Request, session_id: Optional[str] = None, mode: str = "download"):
        booking = await _services(request).verifier.require_paid_booking(session_id)
        try:
            content = await asyncio.to_thread(render_receipt_pdf, booking)
        except Exception as e:
            logger.error("receipt_render_failed", booking_reference=booking.booking_reference, error=str(e))
            raise ExternalServiceError(
                "Could not generate the PDF receipt",
                service="receipt_pdf",
                retryable=True,
            ) from e

        disposition = "inline" if mode == "inline" else "attachment"
        filename = f"booking-{booking.booking_reference}.pdf"
        return Response(
            content=content,
            media_type="application/pdf",
            headers={
                "Content-Disposition": f'{disposition}; filename="{filename}"',
                "Cache-Control": "private, no-store",
            },
        )

    @app.post("/api/google-wallet")
    async def google_wallet(request: Request):
        services = _services(request)
        if services.wallet is None:
            raise FeatureUnavailableError(
                "Google Wallet is not configured",
                reason="wallet_not_configured",
            )
        body = await _json_body(request)
        booking = await services.verifier.require_paid_booking(_session_id_from_body(body))
        site = services.notifier.site_url(booking) or _origin(request, services.config)
        save_url = services.wallet.save_url(
            booking,
            verify_url=services.notifier.verify_url(booking),
            origins=[site],
        )
        return {"saveUrl": save_url, "objectId": services.wallet.object_id(booking)}

    @app.get("/api/r")
    async def success_redirect(request: Request, session_id: Optional[str] = None):
        """Bridge plain-path links (emails, QR codes) to the client success route."""
        routing = RoutingMode(_services(request).config.routing_mode)
        if session_id:
            token = url_quote(session_id, safe="")
            target = f"/#/success?session_id={token}" if routing == RoutingMode.HASH else f"/success?session_id={token}"
        else:
            target = "/#/" if routing == RoutingMode.HASH else "/"
        return RedirectResponse(target, status_code=302, headers={"Cache-Control": "no-store"})

    # -------------------------------------------------------------------------
    # Webhook
    # -------------------------------------------------------------------------

    @app.post("/api/stripe-webhook")
    async def stripe_webhook(request: Request):
        """Stripe webhook: the exact raw body is needed for signature verification."""
        payload = await request.body()
        signature = request.headers.get("stripe-signature")
        result = await _services(request).webhooks.handle(payload, signature)
        return result.to_response()

    # -------------------------------------------------------------------------
    # Admin
    # -------------------------------------------------------------------------

    @app.get("/api/admin/reconciliation")
    async def reconciliation_issues(request: Request, limit: int = 100):
        webhooks = _services(request).webhooks
        issues = await webhooks.get_reconciliation_issues(limit)
        return {
            "stats": await webhooks.get_reconciliation_stats(),
            "issues": [issue.model_dump(mode="json") for issue in issues],
        }


# =============================================================================
# ERROR HANDLING
# =============================================================================

def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        log = logger.bind(path=request.url.path, status_code=exc.status_code, reason=exc.reason)
        if isinstance(exc, ValidationError):
            log.info("request_rejected", error=exc.message)
        elif exc.status_code >= 500:
            log.error("request_failed", error=exc.message, error_type=type(exc).__name__)
        else:
            log.warning("request_refused", error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error", path=request.url.path, error_type=type(exc).__name__)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    config: Optional[BookingConfig] = None,
    provider: Optional[IPaymentProvider] = None,
    repository: Optional[IBookingRepository] = None,
    email_sender: Optional[IEmailSender] = None,
    idempotency: Optional[IIdempotencyStore] = None,
    reconciliation_queue: Optional[IReconciliationQueue] = None,
    wallet: Optional[GoogleWalletIssuer] = None,
) -> FastAPI:
    config = config or BookingConfig.from_env()
    configure_logging(config.log_level, config.log_json)

    services = build_services(
        config,
        provider=provider,
        repository=repository,
        email_sender=email_sender,
        idempotency=idempotency,
        reconciliation_queue=reconciliation_queue,
        wallet=wallet,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        logger.info("server_starting", version=VERSION, env=config.env)
        await services.repository.initialize()
        yield
        logger.info("server_shutting_down")
        await services.repository.close()

    app = FastAPI(
        title="Luggage Deposit Booking API",
        description="Luggage storage bookings with Stripe Checkout",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials="*" not in config.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = request.headers.get("x-request-id") or str(uuid4())[:8]
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    register_error_handlers(app)
    register_routes(app)
    return app


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    settings = BookingConfig.from_env()
    uvicorn.run(
        "api.server:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
