# schemas/booking_definitions.py
# ============================================================================
# LUGGAGE DEPOSIT BOOKING: DOMAIN SCHEMAS
# ============================================================================
# Type-safe definitions shared by the pricing engine, the checkout builder,
# the session verifier, the webhook handler and the HTTP layer.
#
# Money is Decimal in major units (EUR) everywhere inside the system and
# rendered as a JSON number at the API boundary.
# ============================================================================

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, Iterator, List, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    computed_field,
    model_validator,
)
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


Money = Annotated[
    Decimal,
    PlainSerializer(lambda value: float(value), return_type=float, when_used="json"),
]


class CamelModel(BaseModel):
    """Base for models exchanged with the browser client (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class BagSize(str, Enum):
    SMALL = "Small"
    MEDIUM = "Medium"
    LARGE = "Large"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class SessionPaymentStatus(str, Enum):
    """What the verifier reports back to the client."""
    PAID = "paid"
    UNPAID = "unpaid"


class WebhookState(str, Enum):
    RECEIVED = "received"
    SIGNATURE_VERIFIED = "signature_verified"
    PROCESSED = "processed"
    SKIPPED = "skipped"
    REJECTED = "rejected"


class RoutingMode(str, Enum):
    HASH = "hash"
    PATH = "path"


# ============================================================================
# SECTION 2: BOOKING BUILDING BLOCKS
# ============================================================================

class BagQuantities(BaseModel):
    """Bag count per size. Every size is always present."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    small: int = Field(default=0, ge=0, alias="Small")
    medium: int = Field(default=0, ge=0, alias="Medium")
    large: int = Field(default=0, ge=0, alias="Large")

    def get(self, size: BagSize) -> int:
        return getattr(self, size.name.lower())

    def items(self) -> Iterator[Tuple[BagSize, int]]:
        for size in BagSize:
            yield size, self.get(size)

    @property
    def total(self) -> int:
        return self.small + self.medium + self.large

    def as_dict(self) -> Dict[str, int]:
        """Size-name keyed mapping, e.g. {"Small": 2, "Medium": 1, "Large": 0}."""
        return {size.value: count for size, count in self.items()}


class DateRange(CamelModel):
    """Calendar dates drive billing; times are display-only."""

    drop_off_date: date
    pick_up_date: date
    drop_off_time: Optional[str] = None
    pick_up_time: Optional[str] = None

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.pick_up_date < self.drop_off_date:
            raise ValueError("pick-up date is before drop-off date")
        return self


class Customer(CamelModel):
    name: str
    email: str
    phone: str = ""


class PriceQuote(CamelModel):
    model_config = ConfigDict(frozen=True)

    billable_days: int = Field(ge=0)
    per_day_subtotal: Money
    total_price: Money


# ============================================================================
# SECTION 3: BOOKING
# ============================================================================

class Booking(CamelModel):
    """A confirmed (or pending) luggage storage booking."""

    booking_reference: str
    customer: Customer
    date_range: DateRange
    bag_quantities: BagQuantities
    billable_days: int = Field(ge=1)
    per_day_subtotal: Money
    total_price: Money
    currency: str = "eur"
    payment_status: PaymentStatus = PaymentStatus.PENDING
    provider_session_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    pricing_drift: bool = False
    site_url: Optional[str] = None

    @computed_field
    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def merge(self, incoming: "Booking") -> "Booking":
        """Combine a stored booking with a newer write; paid is never moved backwards."""
        status = incoming.payment_status
        if self.is_paid:
            status = PaymentStatus.PAID
        return incoming.model_copy(update={
            "payment_status": status,
            "created_at": self.created_at,
            "provider_session_id": incoming.provider_session_id or self.provider_session_id,
        })


class CheckoutSessionDescriptor(CamelModel):
    """Result of creating a provider checkout session. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    redirect_url: str
    provider_session_id: str
    booking_reference: str
    metadata_payload: Dict[str, str]
    quote: PriceQuote


class VerificationResult(CamelModel):
    payment_status: SessionPaymentStatus
    booking: Optional[Booking] = None


# ============================================================================
# SECTION 4: WEBHOOK PROCESSING
# ============================================================================

class ChannelResult(BaseModel):
    """Outcome of one fan-out channel (persist, customer_email, owner_email)."""

    channel: str
    ok: bool
    detail: Optional[str] = None
    error: Optional[str] = None


class WebhookResult(BaseModel):
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    state: WebhookState = WebhookState.RECEIVED
    session_id: Optional[str] = None
    booking_reference: Optional[str] = None
    duplicate: bool = False
    needs_attention: bool = False
    channels: List[ChannelResult] = Field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return {"received": True}


class IdempotencyRecord(BaseModel):
    """Idempotency tracking record"""

    key: str
    status: str  # "processing", "completed"
    result: Optional[str] = None
    lock_holder: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class ReconciliationIssue(BaseModel):
    """A paid session that could not be turned into a booking automatically."""

    issue_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_id: Optional[str] = None
    session_id: Optional[str] = None
    reason: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    amount_total: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    resolved: bool = False
