import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from errors import ConfigurationError, ExternalServiceError
from services.notifications import (
    BookingNotifier,
    DeliveryStatus,
    InMemoryEmailSender,
    TemplateManager,
)
from services.receipt_pdf import render_receipt_pdf
from services.wallet import SAVE_URL_PREFIX, GoogleWalletIssuer, bags_summary

from conftest import OWNER_EMAIL, SITE_URL, make_booking


@pytest.fixture(scope="module")
def rsa_keys():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture
def wallet(rsa_keys):
    return GoogleWalletIssuer("3388000000012345", "wallet@project.iam.gserviceaccount.com", rsa_keys[0])


# =============================================================================
# TEMPLATES
# =============================================================================

def test_customer_email_escapes_user_input():
    booking = make_booking(customer={"name": "<script>alert(1)</script>", "email": "ada@example.com"})

    body = TemplateManager().customer_html(booking, pdf_url="https://x.example/pdf?a=1&b=2")

    assert "<script>" not in body
    assert "&lt;script&gt;" in body
    assert "a=1&amp;b=2" in body
    assert "Total Paid: 48.00 EUR" in body
    assert "Via Gioberti" in body


def test_owner_email_mentions_drift():
    templates = TemplateManager()

    assert "does not match" in templates.owner_html(make_booking(pricing_drift=True))
    assert "does not match" not in templates.owner_html(make_booking())
    assert "LDR-TEST2345" in templates.owner_subject(make_booking())


# =============================================================================
# NOTIFIER
# =============================================================================

@pytest.mark.anyio
async def test_customer_confirmation_has_receipt_and_links():
    sender = InMemoryEmailSender()
    notifier = BookingNotifier(sender, owner_email=OWNER_EMAIL, email_from="bookings@example.com")

    record = await notifier.send_customer_confirmation(make_booking())

    assert record.status == DeliveryStatus.SENT
    assert record.message_id == "mem-1"
    assert record.attachments == ["booking-LDR-TEST2345.pdf"]
    assert not record.wallet_link

    message = sender.sent[0]
    assert message.to == "ada@example.com"
    assert message.from_email == "bookings@example.com"
    assert message.attachments[0].content.startswith(b"%PDF")
    assert f"{SITE_URL}/api/booking-pdf?session_id=cs_test_paid&amp;mode=download" in message.html


@pytest.mark.anyio
async def test_receipt_failure_still_sends_email():
    def broken_renderer(booking):
        raise RuntimeError("font missing")

    sender = InMemoryEmailSender()
    notifier = BookingNotifier(sender, owner_email=OWNER_EMAIL, receipt_renderer=broken_renderer)

    record = await notifier.send_customer_confirmation(make_booking())

    assert record.attachments == []
    assert len(sender.sent) == 1


@pytest.mark.anyio
async def test_owner_notification_goes_to_owner():
    sender = InMemoryEmailSender()
    notifier = BookingNotifier(sender, owner_email=OWNER_EMAIL, receipt_renderer=None)

    record = await notifier.send_owner_notification(make_booking())

    assert record.recipient_email == OWNER_EMAIL
    assert "ada@example.com" in sender.sent[0].html


@pytest.mark.anyio
async def test_delivery_failure_propagates():
    notifier = BookingNotifier(
        InMemoryEmailSender(fail_for=[OWNER_EMAIL]),
        owner_email=OWNER_EMAIL,
        receipt_renderer=None,
    )

    with pytest.raises(ExternalServiceError):
        await notifier.send_owner_notification(make_booking())


@pytest.mark.anyio
async def test_wallet_link_is_included_when_configured(wallet):
    sender = InMemoryEmailSender()
    notifier = BookingNotifier(sender, owner_email=OWNER_EMAIL, receipt_renderer=None, wallet=wallet)

    record = await notifier.send_customer_confirmation(make_booking())

    assert record.wallet_link
    assert "Add to Google Wallet" in sender.sent[0].html


def test_links_need_a_site_url():
    notifier = BookingNotifier(InMemoryEmailSender(), owner_email=OWNER_EMAIL)

    assert notifier.pdf_url(make_booking(site_url=None)) is None
    assert notifier.verify_url(make_booking()) == f"{SITE_URL}/api/r?session_id=cs_test_paid"


# =============================================================================
# DOCUMENTS
# =============================================================================

def test_receipt_pdf_renders():
    content = render_receipt_pdf(make_booking(customer={"name": "Zoë " * 40, "email": "z@example.com"}))

    assert content.startswith(b"%PDF")
    assert len(content) > 1000


def test_wallet_save_url_carries_signed_pass(wallet, rsa_keys):
    url = wallet.save_url(make_booking(), verify_url=f"{SITE_URL}/api/r?session_id=cs_test_paid", origins=[SITE_URL])

    assert url.startswith(SAVE_URL_PREFIX)
    claims = jwt.decode(url[len(SAVE_URL_PREFIX):], rsa_keys[1], algorithms=["RS256"], audience="google")
    assert claims["typ"] == "savetowallet"
    assert claims["origins"] == [SITE_URL]
    pass_object = claims["payload"]["genericObjects"][0]
    assert pass_object["id"] == "3388000000012345.LDR-TEST2345"
    assert pass_object["barcode"]["value"].endswith("session_id=cs_test_paid")


def test_wallet_requires_credentials():
    with pytest.raises(ConfigurationError):
        GoogleWalletIssuer("3388000000012345", "", "")


def test_wallet_bad_key_is_external_error():
    issuer = GoogleWalletIssuer("3388000000012345", "wallet@example.com", "not a pem key")

    with pytest.raises(ExternalServiceError):
        issuer.save_url(make_booking())


def test_bags_summary():
    assert bags_summary(make_booking()) == "S:2 M:1"
