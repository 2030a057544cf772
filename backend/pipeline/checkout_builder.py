"""
Checkout Session Builder
========================
Raw booking request -> validated booking -> priced -> exactly one provider
checkout session.

Validation failures raise ValidationError with a machine-readable reason and
never reach the provider:

    invalid_email, missing_customer_name, missing_dates, invalid_dates,
    invalid_date_range, invalid_bag_size, invalid_quantity, no_bags

pip install pydantic stripe structlog
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import structlog

from errors import ExternalServiceError, ValidationError
from pipeline.metadata import encode_metadata
from pipeline.payment_provider import IPaymentProvider
from pipeline.pricing import PRICE_PER_DAY, line_unit_amount, parse_calendar_date, quote, to_minor_units
from pipeline.reference import generate_booking_reference
from schemas.booking_definitions import (
    BagQuantities,
    BagSize,
    CheckoutSessionDescriptor,
    Customer,
    DateRange,
    PriceQuote,
    RoutingMode,
)

MAX_BAGS_PER_SIZE = 50
SESSION_ID_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


@dataclass(frozen=True)
class BookingRequest:
    """A booking request that passed validation."""
    customer: Customer
    date_range: DateRange
    bag_quantities: BagQuantities
    drop_off_raw: str
    pick_up_raw: str


# =============================================================================
# VALIDATION
# =============================================================================

def _coerce_quantity(size: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid quantity for {size}", reason="invalid_quantity")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or not 0 <= value <= MAX_BAGS_PER_SIZE:
        raise ValidationError(
            f"Quantity for {size} must be a whole number between 0 and {MAX_BAGS_PER_SIZE}",
            reason="invalid_quantity",
            details={"size": size},
        )
    return value


def parse_bag_quantities(raw: Any) -> BagQuantities:
    """Validate a `{"Small": n, ...}` mapping. Missing sizes count as 0."""
    if raw is None:
        return BagQuantities()
    if not isinstance(raw, Mapping):
        raise ValidationError("bagQuantities must be an object", reason="invalid_bag_size")

    known = {size.value for size in BagSize}
    counts: Dict[str, int] = {}
    for size, value in raw.items():
        if size not in known:
            raise ValidationError(
                f"Unknown bag size: {size}",
                reason="invalid_bag_size",
                details={"size": str(size)},
            )
        counts[size] = _coerce_quantity(size, value)
    return BagQuantities(**counts)


def _parse_time(value: Any) -> Optional[str]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if not isinstance(value, str) or not _TIME_PATTERN.match(value.strip()):
        raise ValidationError("Times must use HH:MM", reason="invalid_dates")
    return value.strip()


def parse_date_range(raw: Mapping[str, Any]) -> DateRange:
    drop_off_raw = raw.get("dropOffDate")
    pick_up_raw = raw.get("pickUpDate")
    if not drop_off_raw or not pick_up_raw:
        raise ValidationError("Drop-off and pick-up dates are required", reason="missing_dates")

    drop_off = parse_calendar_date(drop_off_raw)
    pick_up = parse_calendar_date(pick_up_raw)
    if drop_off is None or pick_up is None:
        raise ValidationError("Dates must be ISO-8601", reason="invalid_dates")
    if pick_up < drop_off:
        raise ValidationError(
            "Pick-up date must be on or after the drop-off date",
            reason="invalid_date_range",
        )

    return DateRange(
        drop_off_date=drop_off,
        pick_up_date=pick_up,
        drop_off_time=_parse_time(raw.get("dropOffTime")),
        pick_up_time=_parse_time(raw.get("pickUpTime")),
    )


def parse_customer(raw: Mapping[str, Any]) -> Customer:
    name = raw.get("customerName")
    email = raw.get("customerEmail")
    phone = raw.get("customerPhone")

    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Customer name is required", reason="missing_customer_name")
    if not isinstance(email, str) or not _EMAIL_PATTERN.match(email.strip()):
        raise ValidationError("A valid email address is required", reason="invalid_email")

    return Customer(
        name=name.strip(),
        email=email.strip(),
        phone=phone.strip() if isinstance(phone, str) else "",
    )


def validate_booking_request(raw: Any) -> BookingRequest:
    if not isinstance(raw, Mapping):
        raise ValidationError("Request body must be a JSON object", reason="invalid_request")

    bag_quantities = parse_bag_quantities(raw.get("bagQuantities"))
    date_range = parse_date_range(raw)
    customer = parse_customer(raw)

    if bag_quantities.total < 1:
        raise ValidationError("At least one bag is required", reason="no_bags")

    return BookingRequest(
        customer=customer,
        date_range=date_range,
        bag_quantities=bag_quantities,
        drop_off_raw=date_range.drop_off_date.isoformat(),
        pick_up_raw=date_range.pick_up_date.isoformat(),
    )


# =============================================================================
# URLS
# =============================================================================

def success_url(base_url: str, routing_mode: RoutingMode) -> str:
    if routing_mode == RoutingMode.PATH:
        return f"{base_url}/success?session_id={SESSION_ID_PLACEHOLDER}"
    return f"{base_url}/#/success?session_id={SESSION_ID_PLACEHOLDER}"


def cancel_url(base_url: str, routing_mode: RoutingMode) -> str:
    if routing_mode == RoutingMode.PATH:
        return f"{base_url}/"
    return f"{base_url}/#/"


# =============================================================================
# BUILDER
# =============================================================================

class CheckoutSessionBuilder:
    """
    Creates exactly one provider checkout session per valid request.

    Example:
        builder = CheckoutSessionBuilder(provider)
        descriptor = await builder.build(body, origin="https://example.com")
        # redirect the browser to descriptor.redirect_url
    """

    def __init__(
        self,
        provider: IPaymentProvider,
        currency: str = "eur",
        routing_mode: RoutingMode = RoutingMode.HASH,
        public_base_url: Optional[str] = None,
    ):
        self.provider = provider
        self.currency = currency
        self.routing_mode = RoutingMode(routing_mode)
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._logger = structlog.get_logger().bind(component="checkout_builder")

    def _line_items(self, request: BookingRequest, price: PriceQuote) -> List[Dict[str, Any]]:
        days = price.billable_days
        items = []
        for size, count in request.bag_quantities.items():
            if count <= 0:
                continue
            items.append({
                "price_data": {
                    "currency": self.currency,
                    "product_data": {
                        "name": f"{size.value} bag storage",
                        "description": (
                            f"{days} day{'s' if days != 1 else ''} at "
                            f"{PRICE_PER_DAY[size]:.2f} {self.currency.upper()} per day"
                        ),
                    },
                    "unit_amount": line_unit_amount(size, days),
                },
                "quantity": count,
            })
        return items

    async def build(
        self,
        raw: Any,
        origin: str,
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSessionDescriptor:
        request = validate_booking_request(raw)
        price = quote(request.drop_off_raw, request.pick_up_raw, request.bag_quantities)
        if price.billable_days < 1:
            raise ValidationError("Invalid date range", reason="invalid_date_range")

        base_url = self.public_base_url or origin.rstrip("/")
        reference = generate_booking_reference(seed=idempotency_key)
        amount_total = to_minor_units(price.total_price)

        metadata = encode_metadata(
            booking_reference=reference,
            drop_off_date=request.drop_off_raw,
            pick_up_date=request.pick_up_raw,
            drop_off_time=request.date_range.drop_off_time,
            pick_up_time=request.date_range.pick_up_time,
            bag_quantities=request.bag_quantities,
            price=price,
            customer_name=request.customer.name,
            customer_email=request.customer.email,
            customer_phone=request.customer.phone,
            site_url=base_url,
        )
        line_items = self._line_items(request, price)

        log = self._logger.bind(booking_reference=reference)
        log.info(
            "checkout_initiated",
            billable_days=price.billable_days,
            bags=request.bag_quantities.as_dict(),
            amount_total=amount_total,
        )

        session = await self.provider.create_checkout_session(
            {
                "mode": "payment",
                "line_items": line_items,
                "customer_email": request.customer.email,
                "client_reference_id": reference,
                "success_url": success_url(base_url, self.routing_mode),
                "cancel_url": cancel_url(base_url, self.routing_mode),
                "metadata": metadata,
            },
            idempotency_key=idempotency_key,
        )

        session_id = session.get("id")
        redirect_url = session.get("url")
        if not session_id or not redirect_url:
            log.error("checkout_session_incomplete", session_id=session_id)
            raise ExternalServiceError(
                "Payment provider returned an incomplete session",
                service="stripe",
                retryable=False,
            )

        log.info("checkout_created", stripe_session_id=session_id)

        return CheckoutSessionDescriptor(
            redirect_url=redirect_url,
            provider_session_id=session_id,
            booking_reference=reference,
            metadata_payload=metadata,
            quote=price,
        )
