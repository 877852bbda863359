"""Booking routes: hold-and-book, list, cancel, expire, invoice check-in."""

import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.config import settings
from slotbook.core.database import get_db
from slotbook.core.dependencies import CurrentUser, check_venue_manager, get_current_user, get_ledger
from slotbook.core.errors import Forbidden, InvalidTransition, NotFound, ValidationError
from slotbook.models.booking import Booking, BookingStatus
from slotbook.schemas import BookingCreate, BookingOut, CheckInTokenOut, VerifyQrIn, VerifyQrOut
from slotbook.services import invoices
from slotbook.services.slot_engine import parse_date, parse_hhmm
from slotbook.services.slot_ledger import SlotLedger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["bookings"])


async def _get_visible_booking(db: AsyncSession, booking_id: str, user: CurrentUser) -> Booking:
    """The booking's owner, the venue's manager, or an admin may see it."""
    booking = await db.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    if booking.user_id != user.id:
        try:
            await check_venue_manager(db, booking.venue_id, user)
        except Forbidden:
            raise Forbidden("Not your booking") from None
    return booking


@router.post("", response_model=BookingOut, status_code=status.HTTP_201_CREATED)
async def create_booking(
    body: BookingCreate,
    user: CurrentUser = Depends(get_current_user),
    ledger: SlotLedger = Depends(get_ledger),
):
    """Hold the slot for the user and create the pending booking it pays for."""
    if not body.venue_id or not body.date or not body.start_time:
        raise ValidationError("Missing venueId, date or startTime")
    parse_hhmm(body.start_time)
    return await ledger.hold_slot(body.venue_id, parse_date(body.date), body.start_time, user_id=user.id)


@router.get("", response_model=list[BookingOut])
async def list_my_bookings(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Booking)
        .where(Booking.user_id == user.id)
        .order_by(Booking.booking_date.desc(), Booking.start_time.desc())
        .limit(50)
    )
    return result.scalars().all()


@router.post("/verify-qr", response_model=VerifyQrOut)
async def verify_check_in_qr(
    body: VerifyQrIn,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ledger: SlotLedger = Depends(get_ledger),
):
    """Venue manager (or admin) scans an invoice QR at the door."""
    payload = invoices.decode_check_in_token(body.qr)
    booking = await db.get(Booking, payload.booking_id)
    if booking is None:
        raise NotFound("Booking not found")
    await check_venue_manager(db, booking.venue_id, user)
    stale = payload.is_stale(ledger.now(), timedelta(hours=settings.invoice_qr_max_age_hours))
    if stale:
        logger.info("Stale check-in QR for booking %s (issued %s)", booking.id, payload.issued_at)
    return VerifyQrOut(stale=stale, issued_at=payload.issued_at, booking=BookingOut.model_validate(booking))


@router.get("/{booking_id}", response_model=BookingOut)
async def get_booking(
    booking_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ledger: SlotLedger = Depends(get_ledger),
):
    """Fetch a booking, expiring it first if its hold has lapsed."""
    await _get_visible_booking(db, booking_id, user)
    booking, _ = await ledger.expire_if_stale(booking_id)
    return booking


@router.post("/{booking_id}/cancel", response_model=BookingOut)
async def cancel_booking(
    booking_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ledger: SlotLedger = Depends(get_ledger),
):
    """Owners must cancel at least ``cancel_cutoff_hours`` before the slot; managers any time."""
    booking = await _get_visible_booking(db, booking_id, user)
    cutoff = settings.cancel_cutoff_hours if booking.user_id == user.id else None
    return await ledger.cancel_booking(booking_id, cancelled_by=user.id, cutoff_hours=cutoff)


@router.post("/{booking_id}/expire", response_model=BookingOut)
async def expire_booking(
    booking_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ledger: SlotLedger = Depends(get_ledger),
):
    await _get_visible_booking(db, booking_id, user)
    booking, expired = await ledger.expire_if_stale(booking_id)
    if expired or booking.status is BookingStatus.EXPIRED:
        return booking
    if booking.status is not BookingStatus.PENDING_PAYMENT:
        raise InvalidTransition(booking_id, booking.status.value, BookingStatus.EXPIRED.value)
    raise ValidationError("Hold has not expired yet")


@router.get("/{booking_id}/check-in-token", response_model=CheckInTokenOut)
async def get_check_in_token(
    booking_id: str,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ledger: SlotLedger = Depends(get_ledger),
):
    """Encrypted payload for the invoice QR code."""
    booking = await _get_visible_booking(db, booking_id, user)
    if booking.advance_amount is None or booking.due_amount is None:
        raise ValidationError("Booking missing server-computed amounts")
    now = ledger.now()
    return CheckInTokenOut(booking_id=booking.id, token=invoices.encode_check_in_token(booking.id, now), issued_at=now)
