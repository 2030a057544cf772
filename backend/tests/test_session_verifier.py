from decimal import Decimal

import pytest

from errors import (
    ExternalServiceError,
    NotFoundError,
    PaymentNotCompletedError,
    ReconciliationError,
    ValidationError,
)
from pipeline.session_verifier import SessionVerifier
from schemas.booking_definitions import PaymentStatus, SessionPaymentStatus

from conftest import FakeStripeProvider, make_session


def _verifier(provider, **kwargs):
    kwargs.setdefault("retry_delay_seconds", 0)
    return SessionVerifier(provider, **kwargs)


@pytest.mark.anyio
async def test_paid_session_yields_booking():
    provider = FakeStripeProvider()
    provider.add_session(make_session())

    result = await _verifier(provider).verify("cs_test_paid")

    assert result.payment_status == SessionPaymentStatus.PAID
    booking = result.booking
    assert booking.booking_reference == "LDR-TEST2345"
    assert booking.payment_status == PaymentStatus.PAID
    assert booking.billable_days == 3
    assert booking.total_price == Decimal("48.00")
    assert booking.provider_session_id == "cs_test_paid"
    assert booking.customer.name == "Ada Lovelace"
    assert booking.date_range.pick_up_time == "18:00"
    assert not booking.pricing_drift


@pytest.mark.anyio
async def test_verification_is_repeatable():
    provider = FakeStripeProvider()
    provider.add_session(make_session())
    verifier = _verifier(provider)

    first = await verifier.verify("cs_test_paid")
    second = await verifier.verify("cs_test_paid")

    assert first == second


@pytest.mark.anyio
async def test_unpaid_session_has_no_booking():
    provider = FakeStripeProvider()
    provider.add_session(make_session(payment_status="unpaid"))

    result = await _verifier(provider).verify("cs_test_paid")

    assert result.payment_status == SessionPaymentStatus.UNPAID
    assert result.booking is None
    with pytest.raises(PaymentNotCompletedError):
        await _verifier(provider).require_paid_booking("cs_test_paid")


@pytest.mark.anyio
@pytest.mark.parametrize("session_id", [None, "", "   "])
async def test_missing_session_id(session_id):
    with pytest.raises(ValidationError) as exc:
        await _verifier(FakeStripeProvider()).verify(session_id)
    assert exc.value.reason == "missing_session_id"


@pytest.mark.anyio
async def test_unknown_session_is_not_found():
    with pytest.raises(NotFoundError):
        await _verifier(FakeStripeProvider()).verify("cs_missing")


@pytest.mark.anyio
async def test_transient_failure_is_retried_once():
    provider = FakeStripeProvider()
    provider.add_session(make_session())
    provider.retrieve_failures.append(
        ExternalServiceError("timeout", service="stripe", retryable=True)
    )

    result = await _verifier(provider, max_retries=1).verify("cs_test_paid")

    assert result.payment_status == SessionPaymentStatus.PAID
    assert provider.retrieve_calls == 2


@pytest.mark.anyio
async def test_exhausted_retries_report_verification_unavailable():
    provider = FakeStripeProvider()
    provider.add_session(make_session())
    provider.retrieve_failures.extend([
        ExternalServiceError("timeout", service="stripe", retryable=True),
        ExternalServiceError("timeout", service="stripe", retryable=True),
    ])

    with pytest.raises(ExternalServiceError) as exc:
        await _verifier(provider, max_retries=1).verify("cs_test_paid")
    assert exc.value.reason == "verification_unavailable"
    assert exc.value.retryable
    assert provider.retrieve_calls == 2


@pytest.mark.anyio
async def test_permanent_failure_is_not_retried():
    provider = FakeStripeProvider()
    provider.retrieve_failures.append(ExternalServiceError("bad key", service="stripe"))

    with pytest.raises(ExternalServiceError):
        await _verifier(provider, max_retries=3).verify("cs_test_paid")
    assert provider.retrieve_calls == 1


def test_amount_mismatch_flags_drift_and_keeps_paid_amount():
    verifier = _verifier(FakeStripeProvider())

    booking = verifier.reconstruct_booking(make_session(amount_total=4500))

    assert booking.pricing_drift
    assert booking.total_price == Decimal("45.00")
    assert booking.billable_days == 3


def test_stored_day_count_mismatch_flags_drift():
    session = make_session()
    session["metadata"]["billableDays"] = "2"

    booking = _verifier(FakeStripeProvider()).reconstruct_booking(session)

    assert booking.pricing_drift
    assert booking.billable_days == 3


@pytest.mark.parametrize(
    "metadata_update",
    [
        {"dropOffDate": "2024-03-12", "pickUpDate": "2024-03-10"},
        {"bagQuantities": '{"Small":0,"Medium":0,"Large":0}'},
    ],
)
def test_impossible_booking_needs_reconciliation(metadata_update):
    session = make_session()
    session["metadata"].update(metadata_update)

    with pytest.raises(ReconciliationError) as exc:
        _verifier(FakeStripeProvider()).reconstruct_booking(session)
    assert exc.value.reason == "corrupt_metadata"


@pytest.mark.anyio
async def test_paid_session_without_metadata_raises_reconciliation():
    provider = FakeStripeProvider()
    provider.add_session(make_session(metadata={}))

    with pytest.raises(ReconciliationError):
        await _verifier(provider).verify("cs_test_paid")


def test_unversioned_session_is_rebuilt_with_session_email():
    session = make_session(metadata={
        "customerName": "Ada Lovelace",
        "customerPhone": "",
        "dropOffDate": "2024-03-10",
        "pickUpDate": "2024-03-12",
        "quantities": '{"Small":2,"Medium":1,"Large":0}',
        "billableDays": "3",
    })

    booking = _verifier(FakeStripeProvider()).reconstruct_booking(session)

    assert booking.customer.email == "ada@example.com"
    assert booking.billable_days == 3
    assert not booking.pricing_drift
    assert booking.booking_reference.startswith("LDR-")


def test_unversioned_session_without_any_email_needs_reconciliation():
    session = make_session(metadata={
        "bookingId": "LDR-TEST2345",
        "customerName": "Ada Lovelace",
        "dropOffDate": "2024-03-10",
        "pickUpDate": "2024-03-12",
        "bagQuantities": '{"Small":1}',
    })
    session["customer_email"] = None

    with pytest.raises(ReconciliationError) as exc:
        _verifier(FakeStripeProvider()).reconstruct_booking(session)
    assert exc.value.reason == "missing_metadata"
