"""Venue slot routes: availability, slot configuration and manager slot actions."""

from datetime import date, timedelta

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.database import get_db
from slotbook.core.dependencies import CurrentUser, get_ledger, require_venue_manager
from slotbook.core.errors import ValidationError
from slotbook.models.booking import Booking, BookingStatus
from slotbook.schemas import (
    BlockSlotIn,
    BookingOut,
    PhysicalBookingIn,
    ReleaseHoldIn,
    ReserveSlotIn,
    SlotChangeOut,
    SlotConfigIn,
    SlotConfigOut,
    SlotKeyIn,
    SlotOut,
    SlotsOut,
)
from slotbook.services.slot_engine import parse_date, parse_hhmm
from slotbook.services.slot_ledger import SlotLedger

router = APIRouter(prefix="/venues/{venue_id}", tags=["venues"])

DEFAULT_RANGE_DAYS = 7


def _slot_key(body: SlotKeyIn) -> tuple[date, str]:
    if not body.date or not body.start_time:
        raise ValidationError("Missing date or startTime")
    parse_hhmm(body.start_time)
    return parse_date(body.date), body.start_time


# ---------------------------------------------------------------------------
# Availability and configuration
# ---------------------------------------------------------------------------


@router.get("/slots", response_model=SlotsOut)
async def list_slots(
    venue_id: str,
    date_from: str | None = Query(None, alias="from"),
    date_to: str | None = Query(None, alias="to"),
    ledger: SlotLedger = Depends(get_ledger),
):
    start = parse_date(date_from, "from") if date_from else await ledger.local_today(venue_id)
    end = parse_date(date_to, "to") if date_to else start + timedelta(days=DEFAULT_RANGE_DAYS - 1)
    slots = await ledger.reconstruct(venue_id, start, end)
    return SlotsOut(
        venue_id=venue_id,
        date_from=start,
        date_to=end,
        slots=[SlotOut.model_validate(s) for s in slots],
    )


@router.get("/slot-config", response_model=SlotConfigOut)
async def get_slot_config(venue_id: str, ledger: SlotLedger = Depends(get_ledger)):
    return await ledger.get_config(venue_id)


@router.put("/slot-config", response_model=SlotConfigOut)
async def put_slot_config(
    venue_id: str,
    body: SlotConfigIn,
    _: CurrentUser = Depends(require_venue_manager),
    ledger: SlotLedger = Depends(get_ledger),
):
    if not body.start_time or not body.end_time or body.slot_duration_minutes is None or body.days_of_week is None:
        raise ValidationError("Missing startTime, endTime, slotDurationMinutes or daysOfWeek")
    return await ledger.upsert_config(
        venue_id,
        start_time=body.start_time,
        end_time=body.end_time,
        slot_duration_minutes=body.slot_duration_minutes,
        days_of_week=body.days_of_week,
        timezone=body.timezone,
    )


# ---------------------------------------------------------------------------
# Manager slot actions
# ---------------------------------------------------------------------------


@router.post("/slots/block", response_model=SlotChangeOut)
async def block_slot(
    venue_id: str,
    body: BlockSlotIn,
    user: CurrentUser = Depends(require_venue_manager),
    ledger: SlotLedger = Depends(get_ledger),
):
    day, start = _slot_key(body)
    await ledger.block_slot(venue_id, day, start, reason=body.reason, blocked_by=user.id)
    return SlotChangeOut(changed=True)


@router.post("/slots/unblock", response_model=SlotChangeOut)
async def unblock_slot(
    venue_id: str,
    body: SlotKeyIn,
    _: CurrentUser = Depends(require_venue_manager),
    ledger: SlotLedger = Depends(get_ledger),
):
    day, start = _slot_key(body)
    return SlotChangeOut(changed=await ledger.unblock_slot(venue_id, day, start))


@router.post("/slots/reserve", response_model=SlotChangeOut)
async def reserve_slot(
    venue_id: str,
    body: ReserveSlotIn,
    user: CurrentUser = Depends(require_venue_manager),
    ledger: SlotLedger = Depends(get_ledger),
):
    day, start = _slot_key(body)
    await ledger.reserve_slot(venue_id, day, start, reserved_by=user.id, note=body.note)
    return SlotChangeOut(changed=True)


@router.post("/slots/unreserve", response_model=SlotChangeOut)
async def unreserve_slot(
    venue_id: str,
    body: SlotKeyIn,
    _: CurrentUser = Depends(require_venue_manager),
    ledger: SlotLedger = Depends(get_ledger),
):
    day, start = _slot_key(body)
    return SlotChangeOut(changed=await ledger.unreserve_slot(venue_id, day, start))


@router.post("/slots/unbook", response_model=SlotChangeOut)
async def unbook_slot(
    venue_id: str,
    body: SlotKeyIn,
    _: CurrentUser = Depends(require_venue_manager),
    ledger: SlotLedger = Depends(get_ledger),
):
    day, start = _slot_key(body)
    return SlotChangeOut(changed=await ledger.unbook_slot(venue_id, day, start))


@router.post("/slots/release", response_model=SlotChangeOut)
async def release_hold(
    venue_id: str,
    body: ReleaseHoldIn,
    _: CurrentUser = Depends(require_venue_manager),
    ledger: SlotLedger = Depends(get_ledger),
):
    day, start = _slot_key(body)
    return SlotChangeOut(changed=await ledger.release_hold(venue_id, day, start, booking_id=body.booking_id))


# ---------------------------------------------------------------------------
# Manager bookings
# ---------------------------------------------------------------------------


@router.post("/physical-bookings", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
async def create_physical_booking(
    venue_id: str,
    body: PhysicalBookingIn,
    user: CurrentUser = Depends(require_venue_manager),
    ledger: SlotLedger = Depends(get_ledger),
):
    day, start = _slot_key(body)
    return await ledger.create_physical_booking(
        venue_id,
        day,
        start,
        manager_id=user.id,
        customer_name=body.customer_name,
        customer_phone=body.customer_phone,
        notes=body.notes,
    )


@router.get("/bookings", response_model=list[BookingOut])
async def list_venue_bookings(
    venue_id: str,
    booking_date: str | None = Query(None, alias="date"),
    booking_status: str | None = Query(None, alias="status"),
    _: CurrentUser = Depends(require_venue_manager),
    db: AsyncSession = Depends(get_db),
):
    stmt = select(Booking).where(Booking.venue_id == venue_id)
    if booking_date:
        stmt = stmt.where(Booking.booking_date == parse_date(booking_date))
    if booking_status:
        try:
            wanted = BookingStatus.normalize(booking_status)
        except ValueError as exc:
            raise ValidationError(str(exc)) from None
        stmt = stmt.where(Booking.status == wanted)
    result = await db.execute(stmt.order_by(Booking.booking_date.desc(), Booking.start_time.desc()).limit(200))
    return result.scalars().all()
