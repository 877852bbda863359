"""Background housekeeping: hold sweep and payment reconciliation.

Both jobs are safe to run concurrently with live traffic and with each
other; every write goes through the ledger's per-venue transactions.
"""

import logging
from datetime import timedelta

from sqlalchemy import and_, exists, or_, select

from slotbook.core.config import settings
from slotbook.core.errors import GatewayUnavailable, SlotBookError
from slotbook.models.booking import Booking, BookingStatus
from slotbook.models.payment import PaymentAuditEntry
from slotbook.models.venue import VenueSlots
from slotbook.services.payments import PaymentService
from slotbook.services.pricing import format_amount
from slotbook.services.slot_ledger import SlotLedger

logger = logging.getLogger(__name__)


async def sweep_expired_holds(ledger: SlotLedger) -> dict:
    """Delete expired holds on every venue and expire bookings whose hold lapsed."""
    async with ledger.session_factory() as session:
        venue_ids = list((await session.execute(select(VenueSlots.venue_id))).scalars().all())

    holds_removed = 0
    for venue_id in venue_ids:
        holds_removed += await ledger.clean_expired_holds(venue_id)

    # Bookings whose hold row was already gone (released, replaced) still need expiring
    now = ledger.now()
    async with ledger.session_factory() as session:
        result = await session.execute(
            select(Booking.id).where(
                Booking.status == BookingStatus.PENDING_PAYMENT,
                Booking.hold_expires_at <= now,
            )
        )
        stale_ids = list(result.scalars().all())

    bookings_expired = 0
    for booking_id in stale_ids:
        _, expired = await ledger.expire_if_stale(booking_id)
        bookings_expired += expired

    stats = {"venues": len(venue_ids), "holdsRemoved": holds_removed, "bookingsExpired": bookings_expired}
    logger.info("Hold sweep finished: %s", stats)
    return stats


async def reconcile_pending_payments(
    service: PaymentService, grace_minutes: int | None = None, window_hours: int | None = None
) -> dict:
    """Re-verify bookings whose payment was initiated a while ago.

    Covers clients that paid but never came back to the success page. Pending
    bookings are checked until the gateway settles them. Bookings that expired
    with a payment in flight are checked for ``window_hours`` after initiation,
    since the gateway may still complete them.
    """
    grace = timedelta(minutes=settings.reconcile_grace_minutes if grace_minutes is None else grace_minutes)
    window = timedelta(hours=settings.reconcile_window_hours if window_hours is None else window_hours)
    now = service.ledger.now()
    cutoff = now - grace
    async with service.session_factory() as session:
        result = await session.execute(
            select(Booking)
            .where(
                Booking.transaction_uuid.is_not(None),
                Booking.payment_initiated_at <= cutoff,
                or_(
                    Booking.status == BookingStatus.PENDING_PAYMENT,
                    and_(
                        Booking.status == BookingStatus.EXPIRED,
                        Booking.payment_initiated_at >= now - window,
                    ),
                ),
                # Already handed over to a human
                ~exists().where(
                    PaymentAuditEntry.transaction_uuid == Booking.transaction_uuid,
                    PaymentAuditEntry.needs_reconciliation.is_(True),
                ),
            )
            .order_by(Booking.payment_initiated_at)
        )
        pending = list(result.scalars().all())

    stats = {"checked": 0, "confirmed": 0, "failed": 0, "unchanged": 0, "errors": 0}
    for booking in pending:
        stats["checked"] += 1
        total = format_amount(booking.advance_amount) if booking.advance_amount is not None else None
        try:
            outcome = await service.verify(booking.transaction_uuid, service.product_code, total)
        except GatewayUnavailable:
            logger.warning("Gateway unavailable while reconciling booking %s", booking.id)
            stats["errors"] += 1
            continue
        except SlotBookError:
            logger.exception("Reconciliation of booking %s failed", booking.id)
            stats["errors"] += 1
            continue

        if outcome.booking_confirmed or outcome.already_confirmed:
            stats["confirmed"] += 1
        elif outcome.booking_status == BookingStatus.PAYMENT_FAILED.value:
            stats["failed"] += 1
        else:
            stats["unchanged"] += 1

    logger.info("Payment reconciliation finished: %s", stats)
    return stats
