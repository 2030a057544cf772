"""Shared fixtures for the booking backend tests.

- No network: Stripe is replaced by FakeStripeProvider, which keeps the real
  webhook signature check and stores sessions in memory.
- Emails go to InMemoryEmailSender.
- HTTP tests run against the ASGI app through httpx.ASGITransport.
- AnyIO is the async runner (@pytest.mark.anyio).
"""

import copy
import hashlib
import hmac
import json
import sys
import time
from pathlib import Path
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple

import httpx
import pytest
from httpx import ASGITransport

# Backend root holds the top-level packages (api, pipeline, schemas, ...)
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from api.server import create_app
from config import BookingConfig
from errors import NotFoundError
from pipeline.metadata import encode_metadata
from pipeline.payment_provider import StripePaymentProvider
from pipeline.pricing import quote, to_minor_units
from schemas.booking_definitions import (
    BagQuantities,
    Booking,
    Customer,
    DateRange,
    PaymentStatus,
)
from services.notifications import InMemoryEmailSender

WEBHOOK_SECRET = "whsec_test_secret"
OWNER_EMAIL = "owner@example.com"
SITE_URL = "https://luggage.example.com"


# =============================================================================
# FAKE PROVIDER
# =============================================================================

class FakeStripeProvider(StripePaymentProvider):
    """In-memory checkout sessions; webhook verification is the real one."""

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET):
        super().__init__(api_key="sk_test_fake", webhook_secret=webhook_secret)
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.created: List[Tuple[Dict[str, Any], Optional[str]]] = []
        self.retrieve_calls = 0
        self.retrieve_failures: List[Exception] = []

    async def create_checkout_session(
        self, params: Dict[str, Any], idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        self.created.append((params, idempotency_key))
        session_id = f"cs_test_{len(self.created):04d}"
        amount_total = sum(
            item["price_data"]["unit_amount"] * item["quantity"]
            for item in params["line_items"]
        )
        self.sessions[session_id] = {
            "id": session_id,
            "object": "checkout.session",
            "url": f"https://checkout.stripe.test/pay/{session_id}",
            "payment_status": "unpaid",
            "amount_total": amount_total,
            "currency": params["line_items"][0]["price_data"]["currency"],
            "customer_email": params.get("customer_email"),
            "client_reference_id": params.get("client_reference_id"),
            "metadata": dict(params["metadata"]),
            "created": 1710000000,
        }
        return copy.deepcopy(self.sessions[session_id])

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        self.retrieve_calls += 1
        if self.retrieve_failures:
            raise self.retrieve_failures.pop(0)
        if session_id not in self.sessions:
            raise NotFoundError("Checkout session not found", details={"session_id": session_id})
        return copy.deepcopy(self.sessions[session_id])

    def add_session(self, session: Dict[str, Any]) -> Dict[str, Any]:
        self.sessions[session["id"]] = copy.deepcopy(session)
        return session

    def mark_paid(self, session_id: str) -> Dict[str, Any]:
        self.sessions[session_id]["payment_status"] = "paid"
        return copy.deepcopy(self.sessions[session_id])


# =============================================================================
# BUILDERS
# =============================================================================

def make_session(
    session_id: str = "cs_test_paid",
    booking_reference: str = "LDR-TEST2345",
    drop_off: str = "2024-03-10",
    pick_up: str = "2024-03-12",
    quantities: Optional[BagQuantities] = None,
    payment_status: str = "paid",
    amount_total: Optional[int] = None,
    metadata: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """A checkout session as Stripe returns it, metadata encoded like the builder does."""
    quantities = quantities or BagQuantities(Small=2, Medium=1)
    price = quote(drop_off, pick_up, quantities)
    if metadata is None:
        metadata = encode_metadata(
            booking_reference=booking_reference,
            drop_off_date=drop_off,
            pick_up_date=pick_up,
            drop_off_time="10:00",
            pick_up_time="18:00",
            bag_quantities=quantities,
            price=price,
            customer_name="Ada Lovelace",
            customer_email="ada@example.com",
            customer_phone="+39 06 1234567",
            site_url=SITE_URL,
        )
    return {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": payment_status,
        "amount_total": to_minor_units(price.total_price) if amount_total is None else amount_total,
        "currency": "eur",
        "customer_email": "ada@example.com",
        "metadata": metadata,
        "created": 1710000000,
    }


def make_event(
    session: Dict[str, Any],
    event_type: str = "checkout.session.completed",
    event_id: str = "evt_test_1",
) -> str:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "data": {"object": session},
    })


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Stripe-Signature header value for `payload`."""
    ts = int(time.time()) if timestamp is None else timestamp
    mac = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def make_booking(**overrides: Any) -> Booking:
    fields = dict(
        booking_reference="LDR-TEST2345",
        customer=Customer(name="Ada Lovelace", email="ada@example.com", phone="+39 06 1234567"),
        date_range=DateRange(
            drop_off_date="2024-03-10",
            pick_up_date="2024-03-12",
            drop_off_time="10:00",
            pick_up_time="18:00",
        ),
        bag_quantities=BagQuantities(Small=2, Medium=1),
        billable_days=3,
        per_day_subtotal="16.00",
        total_price="48.00",
        payment_status=PaymentStatus.PAID,
        provider_session_id="cs_test_paid",
        site_url=SITE_URL,
    )
    fields.update(overrides)
    return Booking(**fields)


def valid_booking_body(**overrides: Any) -> Dict[str, Any]:
    body = {
        "customerName": "Ada Lovelace",
        "customerEmail": "ada@example.com",
        "customerPhone": "+39 06 1234567",
        "dropOffDate": "2024-03-10",
        "dropOffTime": "10:00",
        "pickUpDate": "2024-03-12",
        "pickUpTime": "18:00",
        "bagQuantities": {"Small": 2, "Medium": 1, "Large": 0},
    }
    body.update(overrides)
    return body


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force pytest-anyio to use the asyncio event loop."""
    return "asyncio"


@pytest.fixture
def provider() -> FakeStripeProvider:
    return FakeStripeProvider()


@pytest.fixture
def email_sender() -> InMemoryEmailSender:
    return InMemoryEmailSender()


@pytest.fixture
def booking_config() -> BookingConfig:
    return BookingConfig(
        env="test",
        log_level="WARNING",
        log_json=False,
        email_from="bookings@example.com",
        owner_email=OWNER_EMAIL,
    )


@pytest.fixture
def app(booking_config, provider, email_sender):
    return create_app(booking_config, provider=provider, email_sender=email_sender)


@pytest.fixture
async def async_client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
