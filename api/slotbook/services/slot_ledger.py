"""Hold and booking transaction manager.

Every slot mutation is one read-modify-write transaction on the venue's
exception aggregate:

1. take the venue's in-process lock (same-venue calls queue, others don't),
2. ``SELECT ... FOR UPDATE`` the ``venue_slots`` row,
3. re-read the exceptions for the affected key inside the transaction,
4. decide, write, bump the aggregate version and commit.

A unique-key or version conflict at commit time means another process won
the race; it is reported as ``SlotUnavailable``, never overwritten.
"""

import asyncio
import logging
import secrets
import string
import time
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from slotbook.core.config import settings
from slotbook.core.database import async_session_factory
from slotbook.core.errors import (
    AlreadyBooked,
    CancellationClosed,
    InvalidTransition,
    NotFound,
    SlotUnavailable,
    ValidationError,
)
from slotbook.models.base import utcnow
from slotbook.models.booking import Booking, BookingStatus
from slotbook.models.slot_exception import (
    BlockedSlot,
    BookedSlot,
    BookedSlotStatus,
    BookingType,
    ExceptionKind,
    HeldSlot,
    ReservedSlot,
    SlotException,
)
from slotbook.models.venue import Venue, VenueSlots
from slotbook.services import slot_engine
from slotbook.services.pricing import compute_amounts_from_venue

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_booking_id(prefix: str = "booking") -> str:
    """``booking_<epoch ms>_<9 random chars>``; physical bookings use ``physical_``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


@dataclass
class BookedSlotData:
    booking_id: str
    booking_type: BookingType = BookingType.ONLINE
    status: BookedSlotStatus = BookedSlotStatus.CONFIRMED
    user_id: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    notes: str | None = None


class VenueTransaction:
    """Handle given to code running inside ``SlotLedger.transaction``."""

    def __init__(self, session: AsyncSession, config: VenueSlots, now: datetime):
        self.session = session
        self.config = config
        self.now = now

    @property
    def venue_id(self) -> str:
        return self.config.venue_id

    async def exception_at(self, day: date, start_time: str) -> SlotException | None:
        result = await self.session.execute(
            select(SlotException).where(
                SlotException.venue_id == self.venue_id,
                SlotException.slot_date == day,
                SlotException.start_time == start_time,
            )
        )
        return result.scalars().first()

    async def exceptions_between(self, date_from: date, date_to: date) -> list[SlotException]:
        result = await self.session.execute(
            select(SlotException).where(
                SlotException.venue_id == self.venue_id,
                SlotException.slot_date >= date_from,
                SlotException.slot_date <= date_to,
            )
        )
        return list(result.scalars().all())

    async def remove(self, exc: SlotException) -> None:
        # Flush the delete first: the unit of work would otherwise insert a
        # replacement for the same key before deleting the old row.
        await self.session.delete(exc)
        await self.session.flush()

    def add(self, exc: SlotException) -> SlotException:
        exc.venue_id = self.venue_id
        exc.created_at = self.now
        self.session.add(exc)
        return exc

    async def booking(self, booking_id: str) -> Booking | None:
        return await self.session.get(Booking, booking_id, with_for_update=True, populate_existing=True)

    async def venue(self) -> Venue:
        venue = await self.session.get(Venue, self.venue_id)
        if venue is None:
            raise NotFound(f"Venue {self.venue_id} not found")
        return venue

    def require_bookable(self, day: date, start_time: str) -> None:
        """The key must be a real, future slot of this venue's schedule."""
        cfg = self.config
        if slot_engine.weekday_index(day) not in set(cfg.days_of_week):
            raise ValidationError(f"Venue is closed on {day.isoformat()}")
        if start_time not in slot_engine.generate_start_times(cfg.start_time, cfg.end_time, cfg.slot_duration_minutes):
            raise ValidationError(f"{start_time} is not a slot start time for this venue")
        if slot_engine.is_past(day, start_time, slot_engine.venue_zone(cfg.timezone), self.now):
            raise ValidationError("Slot is in the past")


class SlotLedger:
    """Owns all writes to slot exceptions and the bookings tied to them."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
        clock: Callable[[], datetime] = utcnow,
        hold_ttl_minutes: int | None = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.hold_ttl_minutes = hold_ttl_minutes or settings.hold_ttl_minutes
        self._locks: dict[str, asyncio.Lock] = {}

    def now(self) -> datetime:
        return self.clock()

    def _lock_for(self, venue_id: str) -> asyncio.Lock:
        lock = self._locks.get(venue_id)
        if lock is None:
            lock = self._locks[venue_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def transaction(self, venue_id: str) -> AsyncIterator[VenueTransaction]:
        async with self._lock_for(venue_id), self.session_factory() as session:
            try:
                config = await session.scalar(
                    select(VenueSlots).where(VenueSlots.venue_id == venue_id).with_for_update()
                )
                if config is None:
                    raise NotFound(f"Slot configuration for venue {venue_id} not found")
                txn = VenueTransaction(session, config, self.now())
                yield txn
                config.touch(txn.now)
                await session.commit()
            except (IntegrityError, StaleDataError) as exc:
                await session.rollback()
                logger.warning("Concurrent slot update on venue %s: %s", venue_id, exc)
                raise SlotUnavailable("Slot was changed by another request, please retry") from exc
            except Exception:
                await session.rollback()
                raise

    # ------------------------------------------------------------------
    # Reads (no lock)
    # ------------------------------------------------------------------

    async def get_config(self, venue_id: str) -> VenueSlots:
        async with self.session_factory() as session:
            config = await session.get(VenueSlots, venue_id)
        if config is None:
            raise NotFound(f"Slot configuration for venue {venue_id} not found")
        return config

    async def local_today(self, venue_id: str) -> date:
        config = await self.get_config(venue_id)
        return slot_engine.local_date(self.now(), slot_engine.venue_zone(config.timezone))

    async def reconstruct(self, venue_id: str, date_from: date, date_to: date) -> list[slot_engine.ReconstructedSlot]:
        slot_engine.date_range(date_from, date_to)
        async with self.session_factory() as session:
            config = await session.get(VenueSlots, venue_id)
            if config is None:
                raise NotFound(f"Slot configuration for venue {venue_id} not found")
            result = await session.execute(
                select(SlotException).where(
                    SlotException.venue_id == venue_id,
                    SlotException.slot_date >= date_from,
                    SlotException.slot_date <= date_to,
                )
            )
            exceptions = result.scalars().all()
        return slot_engine.reconstruct_slots(config, exceptions, date_from, date_to, self.now())

    async def get_conflicts(
        self, venue_id: str, day: date, start_time: str, slots_count: int = 1
    ) -> tuple[VenueSlots, list[str]]:
        slot_engine.parse_hhmm(start_time)
        async with self.session_factory() as session:
            config = await session.get(VenueSlots, venue_id)
            if config is None:
                raise NotFound(f"Slot configuration for venue {venue_id} not found")
            result = await session.execute(
                select(SlotException).where(SlotException.venue_id == venue_id, SlotException.slot_date == day)
            )
            exceptions = result.scalars().all()
        conflicts = slot_engine.find_conflicts(config, exceptions, day, start_time, slots_count, self.now())
        return config, conflicts

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def upsert_config(
        self,
        venue_id: str,
        start_time: str,
        end_time: str,
        slot_duration_minutes: int,
        days_of_week: Iterable[int],
        timezone: str | None = None,
    ) -> VenueSlots:
        timezone = timezone or settings.default_timezone
        days = slot_engine.validate_config(start_time, end_time, slot_duration_minutes, days_of_week, timezone)
        now = self.now()
        async with self._lock_for(venue_id), self.session_factory() as session:
            try:
                if await session.get(Venue, venue_id) is None:
                    raise NotFound(f"Venue {venue_id} not found")
                config = await session.scalar(
                    select(VenueSlots).where(VenueSlots.venue_id == venue_id).with_for_update()
                )
                if config is None:
                    config = VenueSlots(venue_id=venue_id)
                    session.add(config)
                config.start_time = start_time
                config.end_time = end_time
                config.slot_duration_minutes = slot_duration_minutes
                config.days_of_week = days
                config.timezone = timezone
                config.touch(now)
                await session.commit()
            except (IntegrityError, StaleDataError) as exc:
                await session.rollback()
                raise SlotUnavailable("Slot configuration was changed by another request") from exc
        logger.info("Slot config for venue %s set to %s-%s/%sm", venue_id, start_time, end_time, slot_duration_minutes)
        return config

    # ------------------------------------------------------------------
    # Holds
    # ------------------------------------------------------------------

    async def hold_slot(
        self,
        venue_id: str,
        day: date,
        start_time: str,
        user_id: str,
        booking_id: str | None = None,
        ttl_minutes: int | None = None,
    ) -> Booking:
        """Grant a short exclusive hold and create the pending booking for it."""
        ttl = timedelta(minutes=ttl_minutes or self.hold_ttl_minutes)
        booking_id = booking_id or new_booking_id()

        async with self.transaction(venue_id) as txn:
            txn.require_bookable(day, start_time)
            current = await txn.exception_at(day, start_time)
            if current is not None:
                if isinstance(current, HeldSlot) and (not current.is_active(txn.now) or current.user_id == user_id):
                    await txn.remove(current)
                else:
                    raise SlotUnavailable(f"Slot {day} {start_time} is {current.variant.value}")

            venue = await txn.venue()
            amounts = compute_amounts_from_venue(
                venue.price_per_hour, txn.config.slot_duration_minutes, 1, venue.advance_percentage
            )
            expires_at = txn.now + ttl

            booking = await txn.booking(booking_id)
            if booking is None:
                booking = Booking(id=booking_id, venue_id=venue_id, status=BookingStatus.PENDING_PAYMENT)
                txn.session.add(booking)
            elif booking.status is not BookingStatus.PENDING_PAYMENT:
                raise InvalidTransition(booking_id, booking.status.value, BookingStatus.PENDING_PAYMENT.value)
            booking.user_id = user_id
            booking.booking_date = day
            booking.start_time = start_time
            booking.end_time = slot_engine.end_time_for(start_time, txn.config.slot_duration_minutes)
            booking.booking_type = BookingType.ONLINE
            booking.hold_expires_at = expires_at
            booking.amount = amounts.total_amount
            booking.advance_amount = amounts.advance_amount
            booking.due_amount = amounts.due_amount

            txn.add(HeldSlot(slot_date=day, start_time=start_time, user_id=user_id, booking_id=booking_id, hold_expires_at=expires_at))

        logger.info("Hold granted: %s %s %s to user %s until %s", venue_id, day, start_time, user_id, expires_at)
        return booking

    async def release_hold(self, venue_id: str, day: date, start_time: str, booking_id: str | None = None) -> bool:
        """Remove the hold on a key (only if it belongs to ``booking_id`` when given)."""
        async with self.transaction(venue_id) as txn:
            current = await txn.exception_at(day, start_time)
            if not isinstance(current, HeldSlot):
                return False
            if booking_id is not None and current.booking_id != booking_id:
                return False
            await txn.remove(current)
        logger.info("Hold released: %s %s %s", venue_id, day, start_time)
        return True

    async def clean_expired_holds(self, venue_id: str) -> int:
        """Delete expired holds and expire their still-pending bookings."""
        async with self.transaction(venue_id) as txn:
            result = await txn.session.execute(
                select(HeldSlot).where(HeldSlot.venue_id == venue_id, HeldSlot.hold_expires_at <= txn.now)
            )
            expired = list(result.scalars().all())
            for hold in expired:
                await txn.remove(hold)
                if hold.booking_id:
                    booking = await txn.booking(hold.booking_id)
                    if booking is not None and booking.is_hold_expired(txn.now):
                        _expire(booking, txn.now)
        if expired:
            logger.info("Removed %d expired holds for venue %s", len(expired), venue_id)
        return len(expired)

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    async def _book(self, txn: VenueTransaction, day: date, start_time: str, data: BookedSlotData) -> BookedSlot:
        current = await txn.exception_at(day, start_time)
        if isinstance(current, BookedSlot):
            raise AlreadyBooked(f"Slot {day} {start_time} is already booked")
        if isinstance(current, HeldSlot):
            if current.is_active(txn.now) and current.booking_id != data.booking_id:
                raise SlotUnavailable(f"Slot {day} {start_time} is held by another booking")
            await txn.remove(current)
        elif current is not None:
            raise SlotUnavailable(f"Slot {day} {start_time} is {current.variant.value}")

        return txn.add(
            BookedSlot(
                slot_date=day,
                start_time=start_time,
                booking_id=data.booking_id,
                booking_type=data.booking_type,
                booking_status=data.status,
                user_id=data.user_id,
                customer_name=data.customer_name,
                customer_phone=data.customer_phone,
                notes=data.notes,
            )
        )

    async def book_slot(self, venue_id: str, day: date, start_time: str, data: BookedSlotData) -> BookedSlot:
        """Insert a Booked exception, replacing this booking's hold if any."""
        async with self.transaction(venue_id) as txn:
            booked = await self._book(txn, day, start_time, data)
        logger.info("Slot booked: %s %s %s (%s)", venue_id, day, start_time, data.booking_id)
        return booked

    async def create_physical_booking(
        self,
        venue_id: str,
        day: date,
        start_time: str,
        manager_id: str,
        customer_name: str | None = None,
        customer_phone: str | None = None,
        notes: str | None = None,
    ) -> Booking:
        """Manager walk-in booking: confirmed immediately, paid at the venue."""
        booking_id = new_booking_id("physical")
        async with self.transaction(venue_id) as txn:
            txn.require_bookable(day, start_time)
            data = BookedSlotData(
                booking_id=booking_id,
                booking_type=BookingType.PHYSICAL,
                user_id=manager_id,
                customer_name=customer_name,
                customer_phone=customer_phone,
                notes=notes,
            )
            await self._book(txn, day, start_time, data)
            venue = await txn.venue()
            amounts = compute_amounts_from_venue(venue.price_per_hour, txn.config.slot_duration_minutes, 1, 0)
            booking = Booking(
                id=booking_id,
                venue_id=venue_id,
                user_id=None,
                booking_date=day,
                start_time=start_time,
                end_time=slot_engine.end_time_for(start_time, txn.config.slot_duration_minutes),
                booking_type=BookingType.PHYSICAL,
                status=BookingStatus.CONFIRMED,
                amount=amounts.total_amount,
                advance_amount=amounts.advance_amount,
                due_amount=amounts.due_amount,
                customer_name=customer_name,
                customer_phone=customer_phone,
                notes=notes,
                verified_at=txn.now,
                extra={"created_by": manager_id},
            )
            txn.session.add(booking)
        logger.info("Physical booking %s created by %s for %s %s %s", booking_id, manager_id, venue_id, day, start_time)
        return booking

    async def unbook_slot(self, venue_id: str, day: date, start_time: str) -> bool:
        """Remove a Booked exception. The booking record itself is left as is."""
        return await self._remove_variant(venue_id, day, start_time, ExceptionKind.BOOKED)

    # ------------------------------------------------------------------
    # Manager blocks and reservations
    # ------------------------------------------------------------------

    async def _insert_variant(self, venue_id: str, day: date, start_time: str, new: SlotException) -> SlotException:
        async with self.transaction(venue_id) as txn:
            txn.require_bookable(day, start_time)
            current = await txn.exception_at(day, start_time)
            if current is not None:
                if current.variant is new.variant:
                    return current
                if isinstance(current, HeldSlot) and not current.is_active(txn.now):
                    await txn.remove(current)
                else:
                    raise SlotUnavailable(f"Slot {day} {start_time} is {current.variant.value}")
            new.slot_date = day
            new.start_time = start_time
            txn.add(new)
        logger.info("Slot %s: %s %s %s", new.variant.value, venue_id, day, start_time)
        return new

    async def _remove_variant(self, venue_id: str, day: date, start_time: str, kind: ExceptionKind) -> bool:
        async with self.transaction(venue_id) as txn:
            current = await txn.exception_at(day, start_time)
            if current is None or current.variant is not kind:
                return False
            await txn.remove(current)
        logger.info("Slot un%s: %s %s %s", kind.value, venue_id, day, start_time)
        return True

    async def block_slot(
        self, venue_id: str, day: date, start_time: str, reason: str | None = None, blocked_by: str | None = None
    ) -> SlotException:
        return await self._insert_variant(venue_id, day, start_time, BlockedSlot(reason=reason, blocked_by=blocked_by))

    async def unblock_slot(self, venue_id: str, day: date, start_time: str) -> bool:
        return await self._remove_variant(venue_id, day, start_time, ExceptionKind.BLOCKED)

    async def reserve_slot(
        self, venue_id: str, day: date, start_time: str, reserved_by: str, note: str | None = None
    ) -> SlotException:
        return await self._insert_variant(venue_id, day, start_time, ReservedSlot(note=note, reserved_by=reserved_by))

    async def unreserve_slot(self, venue_id: str, day: date, start_time: str) -> bool:
        return await self._remove_variant(venue_id, day, start_time, ExceptionKind.RESERVED)

    # ------------------------------------------------------------------
    # Booking transitions
    # ------------------------------------------------------------------

    async def _load_booking(self, booking_id: str) -> Booking:
        async with self.session_factory() as session:
            booking = await session.get(Booking, booking_id)
        if booking is None:
            raise NotFound(f"Booking {booking_id} not found")
        return booking

    async def attach_transaction(self, booking_id: str, transaction_uuid: str) -> Booking:
        """Store the gateway transaction id on the booking and its hold."""
        venue_id = (await self._load_booking(booking_id)).venue_id
        async with self.transaction(venue_id) as txn:
            booking = await txn.booking(booking_id)
            if booking.status is not BookingStatus.PENDING_PAYMENT:
                raise InvalidTransition(booking_id, booking.status.value, "payment_initiated")
            booking.transaction_uuid = transaction_uuid
            booking.payment_initiated_at = txn.now
            hold = await txn.exception_at(booking.booking_date, booking.start_time)
            if isinstance(hold, HeldSlot) and hold.booking_id == booking_id:
                hold.transaction_uuid = transaction_uuid
        return booking

    async def confirm_booking(
        self,
        booking_id: str,
        ref_id: str | None = None,
        transaction_uuid: str | None = None,
    ) -> tuple[Booking, bool]:
        """Convert the hold into a Booked slot and confirm the booking.

        Returns ``(booking, already_confirmed)``. The status is re-checked
        under the venue lock, so concurrent confirmations apply once.
        An expired or failed booking is confirmed too when its slot is still
        free; a slot taken in the meantime raises ``SlotUnavailable``.
        """
        venue_id = (await self._load_booking(booking_id)).venue_id
        async with self.transaction(venue_id) as txn:
            booking = await txn.booking(booking_id)
            if booking.status is BookingStatus.CONFIRMED:
                return booking, True
            if not booking.can_transition(BookingStatus.CONFIRMED):
                raise InvalidTransition(booking_id, booking.status.value, BookingStatus.CONFIRMED.value)
            if booking.status is not BookingStatus.PENDING_PAYMENT:
                logger.warning("Late payment confirms booking %s from %s", booking_id, booking.status.value)

            data = BookedSlotData(
                booking_id=booking_id,
                booking_type=booking.booking_type,
                user_id=booking.user_id,
                customer_name=booking.customer_name,
                customer_phone=booking.customer_phone,
                notes=booking.notes,
            )
            await self._book(txn, booking.booking_date, booking.start_time, data)
            booking.status = BookingStatus.CONFIRMED
            booking.verified_at = txn.now
            booking.failure_reason = None
            if ref_id:
                booking.payment_ref_id = ref_id
            if transaction_uuid:
                booking.transaction_uuid = transaction_uuid
        logger.info("Booking %s confirmed (ref %s)", booking_id, ref_id)
        return booking, False

    async def cancel_booking(
        self, booking_id: str, cancelled_by: str | None = None, cutoff_hours: int | None = None
    ) -> Booking:
        """Cancel a pending booking and free its slot.

        With ``cutoff_hours`` the cancellation is refused once the slot starts
        within that many hours.
        """
        venue_id = (await self._load_booking(booking_id)).venue_id
        async with self.transaction(venue_id) as txn:
            booking = await txn.booking(booking_id)
            if not booking.can_transition(BookingStatus.CANCELLED):
                raise InvalidTransition(booking_id, booking.status.value, BookingStatus.CANCELLED.value)
            if cutoff_hours is not None:
                starts_at = slot_engine.slot_start_at(
                    booking.booking_date, booking.start_time, slot_engine.venue_zone(txn.config.timezone)
                )
                if starts_at - txn.now < timedelta(hours=cutoff_hours):
                    raise CancellationClosed(f"Cannot cancel within {cutoff_hours} hours of the booking time")
            current = await txn.exception_at(booking.booking_date, booking.start_time)
            if isinstance(current, (HeldSlot, BookedSlot)) and current.booking_id == booking_id:
                await txn.remove(current)
            booking.status = BookingStatus.CANCELLED
            booking.cancelled_at = txn.now
            booking.cancelled_by = cancelled_by
        logger.info("Booking %s cancelled by %s", booking_id, cancelled_by)
        return booking

    async def expire_if_stale(self, booking_id: str) -> tuple[Booking, bool]:
        """Expire a pending booking whose hold has lapsed. Returns ``(booking, expired_now)``."""
        booking = await self._load_booking(booking_id)
        if not booking.is_hold_expired(self.now()):
            return booking, False
        async with self.transaction(booking.venue_id) as txn:
            booking = await txn.booking(booking_id)
            if not booking.is_hold_expired(txn.now):
                return booking, False
            current = await txn.exception_at(booking.booking_date, booking.start_time)
            if isinstance(current, HeldSlot) and current.booking_id == booking_id:
                await txn.remove(current)
            _expire(booking, txn.now)
        logger.info("Booking %s expired", booking_id)
        return booking, True

    async def mark_payment_failed(self, booking_id: str, reason: str) -> tuple[Booking, bool]:
        """Record a terminal gateway failure. The slot exception is left for a human."""
        async with self.session_factory() as session:
            booking = await session.get(Booking, booking_id, with_for_update=True)
            if booking is None:
                raise NotFound(f"Booking {booking_id} not found")
            if not booking.can_transition(BookingStatus.PAYMENT_FAILED):
                return booking, False
            booking.status = BookingStatus.PAYMENT_FAILED
            booking.failure_reason = reason
            await session.commit()
        logger.info("Booking %s payment failed: %s", booking_id, reason)
        return booking, True


def _expire(booking: Booking, now: datetime) -> None:
    booking.status = BookingStatus.EXPIRED
    booking.expired_at = now
