"""Slot reconstruction: availability from a venue's config plus its exceptions.

Pure calculation module: no database access and no async.
Nothing here mutates an exception; an expired hold is simply reported as
available until the ledger or the sweep removes it. Given the same inputs and
the same ``now`` the output is identical.
"""

import enum
import re
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from slotbook.core.errors import ValidationError
from slotbook.models.slot_exception import ExceptionKind, SlotException

MIN_SLOT_MINUTES = 15
MAX_SLOT_MINUTES = 240
MAX_RANGE_DAYS = 62

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

# First match wins when more than one exception exists for a slot
PRECEDENCE = (ExceptionKind.BLOCKED, ExceptionKind.BOOKED, ExceptionKind.HELD, ExceptionKind.RESERVED)


class SlotStatus(enum.StrEnum):
    AVAILABLE = "AVAILABLE"
    BLOCKED = "BLOCKED"
    BOOKED = "BOOKED"
    HELD = "HELD"
    RESERVED = "RESERVED"


class SlotConfig(Protocol):
    start_time: str
    end_time: str
    slot_duration_minutes: int
    days_of_week: list
    timezone: str


@dataclass(frozen=True)
class ReconstructedSlot:
    date: date
    start_time: str
    end_time: str
    status: SlotStatus
    booking_type: str | None = None
    booking_id: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    user_id: str | None = None
    reason: str | None = None
    note: str | None = None
    hold_expires_at: datetime | None = None

    @property
    def is_available(self) -> bool:
        return self.status is SlotStatus.AVAILABLE


# ---------------------------------------------------------------------------
# Time helpers
# ---------------------------------------------------------------------------


def parse_hhmm(value: str) -> int:
    """"HH:MM" -> minutes since midnight. Raises ValidationError."""
    match = _HHMM.match(value or "")
    if not match:
        raise ValidationError(f"Invalid time {value!r}, expected HH:MM")
    return int(match.group(1)) * 60 + int(match.group(2))


def format_hhmm(minutes: int) -> str:
    # Not wrapped at midnight: a slot starting 23:30 for 60 minutes ends "24:30"
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def end_time_for(start_time: str, duration_minutes: int) -> str:
    return format_hhmm(parse_hhmm(start_time) + duration_minutes)


def parse_date(value: str | date | None, field: str = "date") -> date:
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value or "")
    except ValueError:
        raise ValidationError(f"Invalid {field} {value!r}, expected YYYY-MM-DD") from None


def weekday_index(day: date) -> int:
    """0=Sunday .. 6=Saturday (the convention stored in days_of_week)."""
    return (day.weekday() + 1) % 7


def venue_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone {name!r}") from None


def slot_start_at(day: date, start_time: str, tz: ZoneInfo) -> datetime:
    minutes = parse_hhmm(start_time)
    return datetime.combine(day, time(minutes // 60, minutes % 60), tzinfo=tz)


def is_past(day: date, start_time: str, tz: ZoneInfo, now: datetime) -> bool:
    return slot_start_at(day, start_time, tz) < now


def local_date(now: datetime, tz: ZoneInfo) -> date:
    """Calendar date at the venue for an aware UTC instant."""
    return now.astimezone(tz).date()


def validate_config(
    start_time: str,
    end_time: str,
    slot_duration_minutes: int,
    days_of_week: Iterable[int],
    timezone: str,
) -> list[int]:
    """Check a slot configuration. Returns the normalised weekday list."""
    start = parse_hhmm(start_time)
    end = parse_hhmm(end_time)
    if start >= end:
        raise ValidationError("startTime must be before endTime")
    if not MIN_SLOT_MINUTES <= slot_duration_minutes <= MAX_SLOT_MINUTES:
        raise ValidationError(f"slotDuration must be between {MIN_SLOT_MINUTES} and {MAX_SLOT_MINUTES} minutes")
    if end - start < slot_duration_minutes:
        raise ValidationError("Opening hours are shorter than one slot")
    days = sorted(set(days_of_week))
    if not days:
        raise ValidationError("daysOfWeek must not be empty")
    if any(d < 0 or d > 6 for d in days):
        raise ValidationError("daysOfWeek values must be 0 (Sunday) to 6 (Saturday)")
    venue_zone(timezone)
    return days


def generate_start_times(start_time: str, end_time: str, duration_minutes: int) -> list[str]:
    """All candidate start times, stepping by the slot duration while before close."""
    current = parse_hhmm(start_time)
    end = parse_hhmm(end_time)
    starts: list[str] = []
    while current < end:
        starts.append(format_hhmm(current))
        current += duration_minutes
    return starts


def date_range(date_from: date, date_to: date) -> list[date]:
    if date_to < date_from:
        raise ValidationError("'to' must not be before 'from'")
    days = (date_to - date_from).days + 1
    if days > MAX_RANGE_DAYS:
        raise ValidationError(f"Date range may cover at most {MAX_RANGE_DAYS} days")
    return [date_from + timedelta(days=i) for i in range(days)]


# ---------------------------------------------------------------------------
# Exception overlay
# ---------------------------------------------------------------------------


def index_exceptions(
    exceptions: Iterable[SlotException],
) -> dict[tuple[date, str], dict[ExceptionKind, SlotException]]:
    """Group exceptions by slot key, one per variant (first occurrence wins)."""
    index: dict[tuple[date, str], dict[ExceptionKind, SlotException]] = {}
    for exc in exceptions:
        index.setdefault(exc.key, {}).setdefault(exc.variant, exc)
    return index


def effective_exception(
    candidates: dict[ExceptionKind, SlotException] | None,
    now: datetime,
) -> SlotException | None:
    """The exception that decides the slot's status, honouring precedence and hold expiry."""
    if not candidates:
        return None
    for kind in PRECEDENCE:
        exc = candidates.get(kind)
        if exc is not None and exc.occupies(now):
            return exc
    return None


def _to_slot(day: date, start_time: str, end_time: str, exc: SlotException | None) -> ReconstructedSlot:
    if exc is None:
        return ReconstructedSlot(day, start_time, end_time, SlotStatus.AVAILABLE)

    kind = exc.variant
    if kind is ExceptionKind.BLOCKED:
        return ReconstructedSlot(day, start_time, end_time, SlotStatus.BLOCKED, reason=exc.reason)
    if kind is ExceptionKind.BOOKED:
        return ReconstructedSlot(
            day,
            start_time,
            end_time,
            SlotStatus.BOOKED,
            booking_type=exc.booking_type.value if exc.booking_type else None,
            booking_id=exc.booking_id,
            customer_name=exc.customer_name,
            customer_phone=exc.customer_phone,
            user_id=exc.user_id,
        )
    if kind is ExceptionKind.HELD:
        return ReconstructedSlot(
            day,
            start_time,
            end_time,
            SlotStatus.HELD,
            booking_id=exc.booking_id,
            user_id=exc.user_id,
            hold_expires_at=exc.hold_expires_at,
        )
    return ReconstructedSlot(day, start_time, end_time, SlotStatus.RESERVED, note=exc.note)


def reconstruct_slots(
    config: SlotConfig,
    exceptions: Iterable[SlotException],
    date_from: date,
    date_to: date,
    now: datetime,
) -> list[ReconstructedSlot]:
    """Every bookable slot in [date_from, date_to], chronological, past slots omitted."""
    tz = venue_zone(config.timezone)
    active_days = set(config.days_of_week)
    starts = generate_start_times(config.start_time, config.end_time, config.slot_duration_minutes)
    index = index_exceptions(exceptions)

    slots: list[ReconstructedSlot] = []
    for day in date_range(date_from, date_to):
        if weekday_index(day) not in active_days:
            continue
        for start in starts:
            if is_past(day, start, tz, now):
                continue
            end = end_time_for(start, config.slot_duration_minutes)
            exc = effective_exception(index.get((day, start)), now)
            slots.append(_to_slot(day, start, end, exc))
    return slots


def slot_status(
    config: SlotConfig,
    exceptions: Iterable[SlotException],
    day: date,
    start_time: str,
    now: datetime,
) -> ReconstructedSlot | None:
    """Status of a single slot, or None if it is not a valid future slot."""
    for slot in reconstruct_slots(config, exceptions, day, day, now):
        if slot.start_time == start_time:
            return slot
    return None


def consecutive_start_times(start_time: str, duration_minutes: int, count: int) -> list[str]:
    first = parse_hhmm(start_time)
    return [format_hhmm(first + i * duration_minutes) for i in range(count)]


def find_conflicts(
    config: SlotConfig,
    exceptions: Iterable[SlotException],
    day: date,
    start_time: str,
    slots_count: int,
    now: datetime,
) -> list[str]:
    """Conflict tags ("blocked", "booked", "held", "reserved") for a run of consecutive slots."""
    index = index_exceptions(exceptions)
    conflicts: list[str] = []
    for start in consecutive_start_times(start_time, config.slot_duration_minutes, slots_count):
        exc = effective_exception(index.get((day, start)), now)
        if exc is not None:
            conflicts.append(exc.variant.value)
    return conflicts
