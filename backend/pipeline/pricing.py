"""
Pricing Engine
==============
Billable days, per-day subtotal and total for a storage booking.

Pure and deterministic: the same dates and quantities always produce the same
quote. Dates are naive calendar dates; the time of day never influences the
price. A stay that starts and ends on the same day is billed as one day.

    >>> quote("2024-03-10", "2024-03-12", BagQuantities(Small=2, Medium=1))
    PriceQuote(billable_days=3, per_day_subtotal=Decimal('16.00'), total_price=Decimal('48.00'))
"""

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from types import MappingProxyType
from typing import Mapping, Optional, Union

from schemas.booking_definitions import BagQuantities, BagSize, PriceQuote

DateInput = Union[str, date, None]

CENT = Decimal("0.01")

# EUR per bag per day
PRICE_PER_DAY: Mapping[BagSize, Decimal] = MappingProxyType({
    BagSize.SMALL: Decimal("5.00"),
    BagSize.MEDIUM: Decimal("6.00"),
    BagSize.LARGE: Decimal("7.00"),
})


# =============================================================================
# MONEY
# =============================================================================

def to_minor_units(amount: Union[Decimal, int, float, str]) -> int:
    """EUR -> cents, rounding half-up."""
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int) -> Decimal:
    """Cents -> EUR with two decimal places."""
    return (Decimal(int(amount)) / 100).quantize(CENT)


# =============================================================================
# DAYS
# =============================================================================

def parse_calendar_date(value: DateInput) -> Optional[date]:
    """
    Reduce an ISO-8601 date or datetime (string or object) to its calendar date.

    Returns None for anything unparseable. No timezone conversion is applied:
    "2024-03-10T23:30:00+05:00" is the 10th.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        return None


def calculate_billable_days(drop_off: DateInput, pick_up: DateInput) -> int:
    """
    Whole calendar days between drop-off and pick-up, inclusive of both ends.

    0 signals an invalid range (missing, unparseable, or pick-up before drop-off).
    """
    start = parse_calendar_date(drop_off)
    end = parse_calendar_date(pick_up)
    if start is None or end is None:
        return 0

    days = (end - start).days
    if days < 0:
        return 0
    return days + 1


# =============================================================================
# QUOTE
# =============================================================================

def per_day_subtotal(quantities: BagQuantities) -> Decimal:
    total = sum(
        (PRICE_PER_DAY[size] * count for size, count in quantities.items()),
        Decimal("0"),
    )
    return total.quantize(CENT)


def line_unit_amount(size: BagSize, billable_days: int) -> int:
    """Provider line-item unit amount in cents: one bag of `size` for the whole stay."""
    return to_minor_units(PRICE_PER_DAY[size] * billable_days)


def quote(drop_off: DateInput, pick_up: DateInput, quantities: BagQuantities) -> PriceQuote:
    days = calculate_billable_days(drop_off, pick_up)
    subtotal = per_day_subtotal(quantities)
    total = (subtotal * days).quantize(CENT) if days > 0 else Decimal("0.00")
    return PriceQuote(
        billable_days=days,
        per_day_subtotal=subtotal,
        total_price=total,
    )
