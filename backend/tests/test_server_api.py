import pytest
import stripe

from api.server import create_app
from config import BookingConfig
from errors import ConfigurationError
from services.notifications import InMemoryEmailSender

from conftest import OWNER_EMAIL, FakeStripeProvider, make_event, make_session, sign_payload, valid_booking_body


# =============================================================================
# HEALTH
# =============================================================================

@pytest.mark.anyio
async def test_health_probes(async_client):
    health = await async_client.get("/health")

    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert health.json()["wallet_enabled"] is False
    assert health.headers["X-Request-ID"]
    assert "X-Response-Time-Ms" in health.headers
    assert (await async_client.get("/ready")).json() == {"ready": True}
    assert (await async_client.get("/live")).json() == {"live": True}


@pytest.mark.anyio
async def test_request_id_is_echoed(async_client):
    response = await async_client.get("/live", headers={"X-Request-ID": "req-42"})

    assert response.headers["X-Request-ID"] == "req-42"


# =============================================================================
# QUOTE & CHECKOUT
# =============================================================================

@pytest.mark.anyio
async def test_quote(async_client):
    response = await async_client.post("/api/quote", json={
        "dropOffDate": "2024-03-10",
        "pickUpDate": "2024-03-12",
        "bagQuantities": {"Small": 2, "Medium": 1},
    })

    assert response.status_code == 200
    assert response.json() == {"billableDays": 3, "perDaySubtotal": 16.0, "totalPrice": 48.0}


@pytest.mark.anyio
async def test_quote_for_inverted_range_is_zero(async_client):
    response = await async_client.post("/api/quote", json={
        "dropOffDate": "2024-03-12",
        "pickUpDate": "2024-03-10",
        "bagQuantities": {"Small": 1},
    })

    assert response.json()["billableDays"] == 0
    assert response.json()["totalPrice"] == 0.0


@pytest.mark.anyio
async def test_create_checkout_session(async_client, provider):
    response = await async_client.post(
        "/api/create-checkout-session",
        json=valid_booking_body(),
        headers={"Origin": "https://site.example", "Idempotency-Key": "submit-1"},
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["redirectUrl"] == "https://checkout.stripe.test/pay/cs_test_0001"
    assert body["bookingReference"].startswith("LDR-")

    params, key = provider.created[0]
    assert key == "submit-1"
    assert params["success_url"].startswith("https://site.example/#/success")


@pytest.mark.anyio
async def test_invalid_booking_is_400_with_reason(async_client, provider):
    response = await async_client.post(
        "/api/create-checkout-session",
        json=valid_booking_body(bagQuantities={"Small": 0}),
    )

    assert response.status_code == 400
    assert response.json()["reason"] == "no_bags"
    assert provider.created == []


@pytest.mark.anyio
async def test_non_json_body_is_400(async_client):
    response = await async_client.post(
        "/api/create-checkout-session",
        content=b"not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["reason"] == "invalid_request"


# =============================================================================
# VERIFY, PDF, WALLET, REDIRECT
# =============================================================================

@pytest.mark.anyio
async def test_verify_session_get_and_post(async_client, provider):
    provider.add_session(make_session())

    by_get = await async_client.get("/api/verify-session", params={"session_id": "cs_test_paid"})
    by_post = await async_client.post("/api/verify-session", json={"sessionId": "cs_test_paid"})

    assert by_get.status_code == 200
    assert by_get.json() == by_post.json()
    booking = by_get.json()["booking"]
    assert by_get.json()["paymentStatus"] == "paid"
    assert booking["bookingReference"] == "LDR-TEST2345"
    assert booking["bagQuantities"] == {"Small": 2, "Medium": 1, "Large": 0}
    assert booking["totalPrice"] == 48.0
    assert booking["isPaid"] is True


@pytest.mark.anyio
async def test_verify_unpaid_session(async_client, provider):
    provider.add_session(make_session(payment_status="unpaid"))

    response = await async_client.get("/api/verify-session", params={"session_id": "cs_test_paid"})

    assert response.status_code == 200
    assert response.json() == {"paymentStatus": "unpaid"}


@pytest.mark.anyio
async def test_verify_errors(async_client):
    missing = await async_client.get("/api/verify-session")
    unknown = await async_client.get("/api/verify-session", params={"session_id": "cs_nope"})

    assert missing.status_code == 400
    assert missing.json()["reason"] == "missing_session_id"
    assert unknown.status_code == 404


@pytest.mark.anyio
async def test_verify_with_corrupt_metadata_is_500(async_client, provider):
    provider.add_session(make_session(metadata={"v": "1"}))

    response = await async_client.get("/api/verify-session", params={"session_id": "cs_test_paid"})

    assert response.status_code == 500
    assert response.json()["reason"] == "missing_metadata"


@pytest.mark.anyio
async def test_booking_pdf(async_client, provider):
    provider.add_session(make_session())

    download = await async_client.get("/api/booking-pdf", params={"session_id": "cs_test_paid"})
    inline = await async_client.get("/api/booking-pdf", params={"session_id": "cs_test_paid", "mode": "inline"})

    assert download.status_code == 200
    assert download.headers["content-type"] == "application/pdf"
    assert download.content.startswith(b"%PDF")
    assert download.headers["content-disposition"] == 'attachment; filename="booking-LDR-TEST2345.pdf"'
    assert inline.headers["content-disposition"].startswith("inline;")


@pytest.mark.anyio
async def test_booking_pdf_for_unpaid_session_is_403(async_client, provider):
    provider.add_session(make_session(payment_status="unpaid"))

    response = await async_client.get("/api/booking-pdf", params={"session_id": "cs_test_paid"})

    assert response.status_code == 403
    assert response.json()["error"] == "Payment not confirmed"


@pytest.mark.anyio
async def test_google_wallet_not_configured_is_503(async_client):
    response = await async_client.post("/api/google-wallet", json={"sessionId": "cs_test_paid"})

    assert response.status_code == 503
    assert response.json()["reason"] == "wallet_not_configured"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "routing,with_session,location",
    [
        ("hash", True, "/#/success?session_id=cs_test_paid"),
        ("hash", False, "/#/"),
        ("path", True, "/success?session_id=cs_test_paid"),
        ("path", False, "/"),
    ],
)
async def test_success_redirect(booking_config, provider, email_sender, routing, with_session, location):
    import httpx
    from httpx import ASGITransport

    booking_config.routing_mode = routing
    app = create_app(booking_config, provider=provider, email_sender=email_sender)
    params = {"session_id": "cs_test_paid"} if with_session else {}

    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/r", params=params)

    assert response.status_code == 302
    assert response.headers["location"] == location
    assert response.headers["cache-control"] == "no-store"


# =============================================================================
# WEBHOOK & ADMIN
# =============================================================================

@pytest.mark.anyio
async def test_webhook_end_to_end(async_client, provider, email_sender):
    created = await async_client.post(
        "/api/create-checkout-session",
        json=valid_booking_body(),
        headers={"Origin": "https://site.example"},
    )
    reference = created.json()["bookingReference"]
    session = provider.mark_paid("cs_test_0001")
    payload = make_event(session)

    response = await async_client.post(
        "/api/stripe-webhook",
        content=payload.encode(),
        headers={"Stripe-Signature": sign_payload(payload), "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert sorted(m.to for m in email_sender.sent) == sorted(["ada@example.com", OWNER_EMAIL])
    assert any(reference in m.subject for m in email_sender.sent)

    health = await async_client.get("/health")
    assert health.json()["bookings"] == 1


@pytest.mark.anyio
async def test_webhook_with_bad_signature_is_400(async_client, email_sender):
    payload = make_event(make_session())

    response = await async_client.post(
        "/api/stripe-webhook",
        content=payload.encode(),
        headers={"Stripe-Signature": sign_payload(payload, secret="whsec_other")},
    )
    missing = await async_client.post("/api/stripe-webhook", content=payload.encode())

    assert response.status_code == 400
    assert response.json()["reason"] == "invalid_signature"
    assert missing.status_code == 400
    assert missing.json()["reason"] == "missing_signature"
    assert email_sender.sent == []


@pytest.mark.anyio
async def test_reconciliation_issues_are_listed(async_client):
    payload = make_event(make_session(metadata={"bookingReference": "LDR-X"}))

    await async_client.post(
        "/api/stripe-webhook",
        content=payload.encode(),
        headers={"Stripe-Signature": sign_payload(payload)},
    )
    response = await async_client.get("/api/admin/reconciliation")

    assert response.status_code == 200
    assert response.json()["stats"]["pending"] == 1
    assert response.json()["issues"][0]["reason"] == "unsupported_metadata_version"


# =============================================================================
# STARTUP
# =============================================================================

def test_missing_stripe_secret_fails_at_startup():
    config = BookingConfig(env="test", log_json=False, owner_email=OWNER_EMAIL)

    with pytest.raises(ConfigurationError) as exc:
        create_app(config, email_sender=InMemoryEmailSender())
    assert "STRIPE_SECRET_KEY" in exc.value.message


def test_missing_owner_email_fails_at_startup():
    config = BookingConfig(env="test", log_json=False)

    with pytest.raises(ConfigurationError):
        create_app(config, provider=FakeStripeProvider(), email_sender=InMemoryEmailSender())


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("ROUTING_MODE", "PATH")
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://site.example/")
    monkeypatch.setenv("GOOGLE_WALLET_PRIVATE_KEY", "line1\\nline2")
    monkeypatch.setenv("CORS_ORIGINS", "https://a.example, https://b.example")

    config = BookingConfig.from_env()

    assert config.routing_mode == "path"
    assert config.public_base_url == "https://site.example"
    assert config.wallet_private_key == "line1\nline2"
    assert config.cors_origins == ["https://a.example", "https://b.example"]
    assert not config.wallet_enabled


def test_invalid_routing_mode(monkeypatch):
    monkeypatch.setenv("ROUTING_MODE", "query")

    with pytest.raises(ConfigurationError):
        BookingConfig.from_env()


# =============================================================================
# PROVIDER CONFLICTS & MALFORMED EVENTS
# =============================================================================

class KeyReusedProvider(FakeStripeProvider):
    async def create_checkout_session(self, params, idempotency_key=None):
        raise self._translate(
            stripe.IdempotencyError("Keys for idempotent requests can only be used with the same parameters"),
            "create_checkout_session",
            retryable=False,
        )


@pytest.mark.anyio
async def test_reused_idempotency_key_with_other_body_is_400(booking_config, email_sender):
    import httpx
    from httpx import ASGITransport

    app = create_app(booking_config, provider=KeyReusedProvider(), email_sender=email_sender)

    async with httpx.AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/api/create-checkout-session",
            json=valid_booking_body(customerName="Someone Else"),
            headers={"Idempotency-Key": "submit-1"},
        )

    assert response.status_code == 400
    assert response.json()["reason"] == "idempotency_key_reused"


@pytest.mark.anyio
async def test_signed_event_without_data_object_is_400(async_client, email_sender):
    payload = '{"id": "evt_x", "type": "checkout.session.completed"}'

    response = await async_client.post(
        "/api/stripe-webhook",
        content=payload.encode(),
        headers={"Stripe-Signature": sign_payload(payload)},
    )

    assert response.status_code == 400
    assert response.json()["reason"] == "invalid_payload"
    assert email_sender.sent == []
