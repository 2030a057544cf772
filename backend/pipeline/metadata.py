"""
Checkout Metadata Contract
==========================
The provider session carries everything needed to rebuild a booking, as
string-only key/value pairs. Version "1" keys:

    v, bookingReference, dropOffDate, dropOffTime, pickUpDate, pickUpTime,
    billableDays, bagQuantities (JSON), customerName, customerEmail,
    customerPhone, perDaySubtotal, totalPrice, siteUrl

Values are clipped to the provider's 500 character limit. Sessions created
before the contract was versioned have no `v` and are upgraded on decode:
`bookingId` or a reference derived from the session id, `quantities` as an
alias of `bagQuantities`, and no stored day count.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from errors import ReconciliationError
from pipeline.reference import generate_booking_reference
from schemas.booking_definitions import BagQuantities, BagSize, Booking, PriceQuote

METADATA_VERSION = "1"
MAX_VALUE_LENGTH = 500

REQUIRED_KEYS = (
    "bookingReference",
    "dropOffDate",
    "pickUpDate",
    "billableDays",
    "bagQuantities",
    "customerName",
    "customerEmail",
)

# Unversioned sessions: the day count is recomputed and the email can come
# from the session itself
LEGACY_REQUIRED_KEYS = (
    "bookingReference",
    "dropOffDate",
    "pickUpDate",
    "bagQuantities",
    "customerName",
)
LEGACY_MARKERS = ("bookingId", "bagQuantities", "quantities")


@dataclass(frozen=True)
class DecodedMetadata:
    booking_reference: str
    drop_off_date: str
    pick_up_date: str
    drop_off_time: Optional[str]
    pick_up_time: Optional[str]
    billable_days: Optional[int]
    bag_quantities: BagQuantities
    customer_name: str
    customer_email: str
    customer_phone: str
    site_url: Optional[str]


def _clip(value: Any) -> str:
    text = "" if value is None else str(value)
    return text[:MAX_VALUE_LENGTH]


def encode_metadata(
    booking_reference: str,
    drop_off_date: str,
    pick_up_date: str,
    bag_quantities: BagQuantities,
    price: PriceQuote,
    customer_name: str,
    customer_email: str,
    customer_phone: str = "",
    drop_off_time: Optional[str] = None,
    pick_up_time: Optional[str] = None,
    site_url: Optional[str] = None,
) -> Dict[str, str]:
    payload = {
        "v": METADATA_VERSION,
        "bookingReference": booking_reference,
        "dropOffDate": drop_off_date,
        "dropOffTime": drop_off_time or "",
        "pickUpDate": pick_up_date,
        "pickUpTime": pick_up_time or "",
        "billableDays": str(price.billable_days),
        "bagQuantities": json.dumps(bag_quantities.as_dict(), separators=(",", ":")),
        "customerName": customer_name,
        "customerEmail": customer_email,
        "customerPhone": customer_phone or "",
        "perDaySubtotal": f"{price.per_day_subtotal:.2f}",
        "totalPrice": f"{price.total_price:.2f}",
        "siteUrl": site_url or "",
    }
    return {key: _clip(value) for key, value in payload.items()}


def encode_booking(booking: Booking) -> Dict[str, str]:
    return encode_metadata(
        booking_reference=booking.booking_reference,
        drop_off_date=booking.date_range.drop_off_date.isoformat(),
        pick_up_date=booking.date_range.pick_up_date.isoformat(),
        drop_off_time=booking.date_range.drop_off_time,
        pick_up_time=booking.date_range.pick_up_time,
        bag_quantities=booking.bag_quantities,
        price=PriceQuote(
            billable_days=booking.billable_days,
            per_day_subtotal=booking.per_day_subtotal,
            total_price=booking.total_price,
        ),
        customer_name=booking.customer.name,
        customer_email=booking.customer.email,
        customer_phone=booking.customer.phone,
        site_url=booking.site_url,
    )


def _decode_quantities(raw: str) -> BagQuantities:
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ReconciliationError(
            "bagQuantities is not valid JSON",
            reason="corrupt_metadata",
            details={"field": "bagQuantities"},
        ) from e

    if not isinstance(parsed, dict):
        raise ReconciliationError(
            "bagQuantities is not an object",
            reason="corrupt_metadata",
            details={"field": "bagQuantities"},
        )

    known = {size.value for size in BagSize}
    counts = {}
    for key, value in parsed.items():
        if key not in known or isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ReconciliationError(
                f"bagQuantities has an invalid entry: {key!r}",
                reason="corrupt_metadata",
                details={"field": "bagQuantities"},
            )
        counts[key] = value
    return BagQuantities(**counts)


def _upgrade_legacy(data: Dict[str, Any], session_id: Optional[str]) -> Dict[str, Any]:
    """Map unversioned key names onto version 1."""
    upgraded = dict(data)
    if not upgraded.get("bookingReference"):
        if upgraded.get("bookingId"):
            upgraded["bookingReference"] = upgraded["bookingId"]
        elif session_id:
            upgraded["bookingReference"] = generate_booking_reference(seed=session_id)
    if not upgraded.get("bagQuantities") and upgraded.get("quantities"):
        upgraded["bagQuantities"] = upgraded["quantities"]
    return upgraded


def decode_metadata(
    metadata: Optional[Mapping[str, Any]],
    session_id: Optional[str] = None,
) -> DecodedMetadata:
    """
    Parse a session's metadata. Raises ReconciliationError when it is unusable.

    Unversioned payloads are recognised by their legacy keys. A missing
    reference is derived from `session_id`, and `billable_days` is None
    when the payload never stored it.
    """
    if not metadata:
        raise ReconciliationError("Session has no booking metadata", reason="missing_metadata")

    data = dict(metadata)
    version = data.get("v")
    required = REQUIRED_KEYS
    if version is None and any(data.get(key) for key in LEGACY_MARKERS):
        data = _upgrade_legacy(data, session_id)
        version = METADATA_VERSION
        required = LEGACY_REQUIRED_KEYS
    if version != METADATA_VERSION:
        raise ReconciliationError(
            f"Unsupported metadata version: {version!r}",
            reason="unsupported_metadata_version",
            details={"version": version},
        )

    missing = [key for key in required if not data.get(key)]
    if missing:
        raise ReconciliationError(
            "Session metadata is incomplete",
            reason="missing_metadata",
            details={"missing": missing},
        )

    billable_days = None
    if data.get("billableDays"):
        try:
            billable_days = int(data["billableDays"])
        except (TypeError, ValueError) as e:
            raise ReconciliationError(
                "billableDays is not an integer",
                reason="corrupt_metadata",
                details={"field": "billableDays"},
            ) from e

    return DecodedMetadata(
        booking_reference=data["bookingReference"],
        drop_off_date=data["dropOffDate"],
        pick_up_date=data["pickUpDate"],
        drop_off_time=data.get("dropOffTime") or None,
        pick_up_time=data.get("pickUpTime") or None,
        billable_days=billable_days,
        bag_quantities=_decode_quantities(data["bagQuantities"]),
        customer_name=data["customerName"],
        customer_email=data.get("customerEmail") or "",
        customer_phone=data.get("customerPhone") or "",
        site_url=data.get("siteUrl") or None,
    )
