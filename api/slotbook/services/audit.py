"""Payment audit log writer.

Each entry is committed in its own session, separate from any booking
transaction, so a rolled-back booking update cannot take the record of a
confirmed payment down with it.
"""

import logging
from decimal import Decimal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from slotbook.core.database import async_session_factory
from slotbook.models.payment import PaymentAuditEntry, PaymentLogStatus
from slotbook.models.venue import Venue

logger = logging.getLogger(__name__)


async def log_payment(
    transaction_uuid: str,
    status: PaymentLogStatus,
    amount: Decimal = Decimal("0"),
    booking_id: str | None = None,
    user_id: str | None = None,
    venue_id: str | None = None,
    product_code: str | None = None,
    ref_id: str | None = None,
    needs_reconciliation: bool = False,
    extra: dict | None = None,
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
) -> PaymentAuditEntry:
    extra = dict(extra or {})
    async with session_factory() as session:
        if venue_id:
            venue = await session.get(Venue, venue_id)
            if venue is not None:
                extra.setdefault("manager_id", venue.managed_by)
                extra.setdefault("venue_name", venue.name)

        entry = PaymentAuditEntry(
            transaction_uuid=transaction_uuid,
            booking_id=booking_id,
            user_id=user_id,
            venue_id=venue_id,
            amount=amount,
            status=status,
            method="esewa",
            product_code=product_code,
            ref_id=ref_id,
            needs_reconciliation=needs_reconciliation,
            extra=extra,
        )
        session.add(entry)
        await session.commit()

    if needs_reconciliation:
        logger.warning(
            "Payment %s (%s, booking %s) needs manual reconciliation: %s",
            transaction_uuid,
            status.value,
            booking_id,
            extra.get("note"),
        )
    else:
        logger.info("Payment %s logged as %s for booking %s", transaction_uuid, status.value, booking_id)
    return entry
