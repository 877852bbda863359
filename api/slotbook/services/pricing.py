"""Pricing service for booking amount calculation.

Amounts are always computed server-side from the venue's hourly price and
slot duration; the client never supplies the amount it pays. Online bookings
pay an advance share up front and the rest at the venue. All amounts are
rupees, rounded to the paisa.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from slotbook.core.config import settings
from slotbook.core.errors import ValidationError

PAISA = Decimal("0.01")


@dataclass(frozen=True)
class Amounts:
    total_amount: Decimal
    advance_amount: Decimal
    due_amount: Decimal
    price_per_hour: Decimal
    advance_percentage: int


def _money(value: Decimal) -> Decimal:
    return value.quantize(PAISA, rounding=ROUND_HALF_UP)


def to_decimal(value, field: str = "amount") -> Decimal:
    """Parse a client or gateway amount ("1,500", 1500, "1500.00")."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}: {value!r}")
    try:
        parsed = value if isinstance(value, Decimal) else Decimal(str(value).replace(",", "").strip())
    except InvalidOperation:
        raise ValidationError(f"Invalid {field}: {value!r}") from None
    if not parsed.is_finite():
        raise ValidationError(f"Invalid {field}: {value!r}")
    return parsed


def to_int(value, field: str) -> int:
    """Parse a whole-number field (90, "90", "90.0")."""
    number = to_decimal(value, field)
    if number != number.to_integral_value():
        raise ValidationError(f"{field} must be a whole number")
    return int(number)


def format_amount(value: Decimal) -> str:
    """Gateway form value: "100" for whole rupees, "100.50" otherwise."""
    value = _money(value)
    if value == value.to_integral_value():
        return str(int(value))
    return f"{value:.2f}"


def resolve_percentage(advance_percentage: int | None) -> int:
    return settings.default_advance_percentage if advance_percentage is None else advance_percentage


def split_amount(total: Decimal, advance_percentage: int | None = None) -> tuple[Decimal, Decimal]:
    """Return (advance, due) for a total."""
    pct = resolve_percentage(advance_percentage)
    if not 0 <= pct <= 100:
        raise ValidationError("advancePercentage must be between 0 and 100")
    advance = _money(total * pct / 100)
    return advance, _money(total - advance)


def compute_amounts_from_venue(
    price_per_hour: Decimal,
    slot_duration_minutes: int,
    slots_count: int = 1,
    advance_percentage: int | None = None,
) -> Amounts:
    """Total for ``slots_count`` consecutive slots at the venue's hourly price."""
    if slots_count < 1:
        raise ValidationError("slots must be at least 1")
    price = to_decimal(price_per_hour, "pricePerHour")
    total = _money(price * slot_duration_minutes * slots_count / 60)
    advance, due = split_amount(total, advance_percentage)
    return Amounts(total, advance, due, _money(price), resolve_percentage(advance_percentage))


def compute_amounts_from_booking(booking: dict) -> Amounts:
    """Preview amounts for a booking-shaped payload.

    Uses an explicit ``amount``/``totalAmount`` when present, otherwise
    ``pricePerHour`` x ``slotDuration`` (minutes, default 60) x ``slots``.
    """
    pct = booking.get("advancePercentage")
    if pct is not None:
        pct = to_int(pct, "advancePercentage")

    explicit = booking.get("totalAmount", booking.get("amount"))
    price = to_decimal(booking.get("pricePerHour", 0), "pricePerHour")
    if explicit is not None:
        total = _money(to_decimal(explicit, "totalAmount"))
        advance, due = split_amount(total, pct)
        return Amounts(total, advance, due, _money(price), resolve_percentage(pct))

    duration = to_int(booking.get("slotDuration") or booking.get("duration") or 60, "slotDuration")
    slots = to_int(booking.get("slots") or 1, "slots")
    if duration < 1:
        raise ValidationError("slotDuration must be positive")
    return compute_amounts_from_venue(price, duration, slots, pct)
