"""Payment initiation and verification.

Initiation signs a gateway form for the booking's server-computed advance.
Verification asks the gateway for the transaction status and reconciles it
against the booking. A payment the gateway reports as COMPLETE is always
written to the audit log, even when no booking can be matched or the booking
update fails; those entries are flagged for manual reconciliation.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from slotbook.core.config import settings
from slotbook.core.errors import (
    GatewayNotConfigured,
    InvalidTransition,
    NotFound,
    ReconciliationAmbiguous,
    SlotBookError,
    ValidationError,
)
from slotbook.models.booking import Booking, BookingStatus
from slotbook.models.payment import PaymentLogStatus
from slotbook.models.venue import Venue
from slotbook.services import audit, esewa
from slotbook.services.esewa import EsewaGateway, GatewayStatus, GatewayStatusResponse
from slotbook.services.pricing import (
    Amounts,
    compute_amounts_from_booking,
    compute_amounts_from_venue,
    format_amount,
    to_decimal,
    to_int,
)
from slotbook.services.slot_engine import parse_date, parse_hhmm
from slotbook.services.slot_ledger import SlotLedger

logger = logging.getLogger(__name__)

_TIMESTAMP_SUFFIX = re.compile(r"^(?P<booking_id>.+)_\d+$")


@dataclass
class InitiateResult:
    transaction_uuid: str
    signature: str
    payment_url: str
    payment_params: dict


@dataclass
class VerifyResult:
    verified: bool
    status: str
    transaction_uuid: str | None = None
    ref_id: str | None = None
    total_amount: str | None = None
    product_code: str | None = None
    booking_id: str | None = None
    booking_found: bool | None = None
    booking_confirmed: bool | None = None
    already_confirmed: bool | None = None
    booking_update_failed: bool | None = None
    booking_status: str | None = None
    message: str | None = None


@dataclass
class AmountQuote:
    computed: Amounts
    available: bool | None = None
    conflicts: list[str] = field(default_factory=list)
    slot_duration: int | None = None
    slots_count: int | None = None


class PaymentService:
    def __init__(self, ledger: SlotLedger, gateway: EsewaGateway, product_code: str | None = None):
        self.ledger = ledger
        self.gateway = gateway
        self.product_code = product_code or settings.esewa_product_code
        self.session_factory = ledger.session_factory

    # ------------------------------------------------------------------
    # Booking resolution
    # ------------------------------------------------------------------

    async def resolve_booking(self, transaction_uuid: str) -> Booking | None:
        """Find the booking a gateway transaction belongs to.

        Tried in order, first hit wins:
        (a) the transaction id is the booking id,
        (b) the booking id with its trailing ``_<timestamp>`` removed,
        (c) the transaction id stored on the booking at initiation.
        """
        async with self.session_factory() as session:
            booking = await session.get(Booking, transaction_uuid)
            if booking is not None:
                return booking

            match = _TIMESTAMP_SUFFIX.match(transaction_uuid)
            if match:
                booking = await session.get(Booking, match.group("booking_id"))
                if booking is not None:
                    logger.warning("Resolved %s to booking %s by suffix strip", transaction_uuid, booking.id)
                    return booking

            result = await session.execute(
                select(Booking).where(Booking.transaction_uuid == transaction_uuid).order_by(Booking.created_at.desc())
            )
            booking = result.scalars().first()
            if booking is not None:
                logger.warning("Resolved %s to booking %s by stored transaction id", transaction_uuid, booking.id)
            return booking

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------

    async def initiate(self, booking_id: str | None) -> InitiateResult:
        if not booking_id:
            raise ValidationError("Missing bookingId")
        if not self.gateway.configured:
            logger.error("eSewa secret key is not configured")
            raise GatewayNotConfigured("Payment gateway not configured")

        booking, expired = await self.ledger.expire_if_stale(booking_id)
        if expired:
            raise InvalidTransition(booking_id, BookingStatus.EXPIRED.value, "payment_initiated")
        if booking.status is not BookingStatus.PENDING_PAYMENT:
            raise InvalidTransition(booking_id, booking.status.value, "payment_initiated")
        if booking.advance_amount is None:
            raise ValidationError("Booking missing server-computed amounts")

        epoch_ms = int(self.ledger.now().timestamp() * 1000)
        transaction_uuid = f"{booking_id}_{epoch_ms}"
        booking = await self.ledger.attach_transaction(booking_id, transaction_uuid)

        total = format_amount(booking.advance_amount)
        form = esewa.payment_form(total, transaction_uuid, self.product_code, self.gateway.secret)
        await audit.log_payment(
            transaction_uuid,
            PaymentLogStatus.PENDING,
            amount=booking.advance_amount,
            booking_id=booking_id,
            user_id=booking.user_id,
            venue_id=booking.venue_id,
            product_code=self.product_code,
            extra={"note": "payment initiated"},
            session_factory=self.session_factory,
        )
        logger.info("Payment initiated for booking %s: %s (%s)", booking_id, transaction_uuid, total)

        return InitiateResult(
            transaction_uuid=transaction_uuid,
            signature=form["signature"],
            payment_url=settings.esewa_payment_url,
            payment_params={
                "amount": form["amount"],
                "taxAmount": form["tax_amount"],
                "productServiceCharge": form["product_service_charge"],
                "productDeliveryCharge": form["product_delivery_charge"],
                "totalAmount": form["total_amount"],
                "transactionUuid": form["transaction_uuid"],
                "productCode": form["product_code"],
                "successUrl": form["success_url"],
                "failureUrl": form["failure_url"],
                "signedFieldNames": form["signed_field_names"],
            },
        )

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify(
        self,
        transaction_uuid: str | None,
        product_code: str | None,
        total_amount: str | None = None,
    ) -> VerifyResult:
        if not transaction_uuid or not product_code:
            raise ValidationError("Missing required parameters: transactionUuid, productCode")
        if not self.gateway.configured:
            logger.error("eSewa secret key is not configured")
            raise GatewayNotConfigured("Payment gateway not configured")

        booking = await self.resolve_booking(transaction_uuid)
        if not total_amount:
            if booking is not None and booking.advance_amount is not None:
                total_amount = format_amount(booking.advance_amount)
            else:
                total_amount = "0"

        gateway = await self.gateway.check_status(transaction_uuid, product_code, str(total_amount))
        base = VerifyResult(
            verified=gateway.status.is_success,
            status=gateway.raw_status or gateway.status.value,
            transaction_uuid=gateway.transaction_uuid or transaction_uuid,
            ref_id=gateway.ref_id,
            total_amount=gateway.total_amount or str(total_amount),
            product_code=gateway.product_code or product_code,
            booking_id=booking.id if booking is not None else None,
        )

        if gateway.status.is_success:
            return await self._on_complete(base, gateway, booking)
        if gateway.status.is_failure:
            return await self._on_failure(base, gateway, booking)

        # Non-terminal: never guess, just report what the gateway said
        logger.info("Payment %s not complete: %s", transaction_uuid, base.status)
        if gateway.status is GatewayStatus.NOT_FOUND:
            base.booking_status = BookingStatus.NOT_FOUND.value
        elif booking is not None:
            base.booking_status = booking.status.value
        return base

    def _amount(self, base: VerifyResult) -> Decimal:
        try:
            return to_decimal(base.total_amount or "0")
        except ValidationError:
            return Decimal("0")

    async def _log(self, base: VerifyResult, status: PaymentLogStatus, booking: Booking | None, **kwargs):
        return await audit.log_payment(
            base.transaction_uuid,
            status,
            amount=self._amount(base),
            booking_id=booking.id if booking is not None else base.booking_id,
            user_id=booking.user_id if booking is not None else None,
            venue_id=booking.venue_id if booking is not None else None,
            product_code=base.product_code,
            ref_id=base.ref_id,
            session_factory=self.session_factory,
            **kwargs,
        )

    async def _reconcile_later(self, base: VerifyResult, booking: Booking | None, problem: SlotBookError) -> None:
        try:
            await self._log(
                base,
                PaymentLogStatus.SUCCESS,
                booking,
                needs_reconciliation=True,
                extra={"note": problem.message, "error": problem.code, "esewa_status": base.status},
            )
        except SQLAlchemyError:
            logger.exception("Could not write reconciliation entry for confirmed payment %s", base.transaction_uuid)

    async def _on_complete(
        self, base: VerifyResult, gateway: GatewayStatusResponse, booking: Booking | None
    ) -> VerifyResult:
        if booking is None:
            problem = ReconciliationAmbiguous(f"eSewa confirmed {base.transaction_uuid} but no booking matches it")
            await self._reconcile_later(base, None, problem)
            base.booking_found = False
            base.message = "Payment verified but booking not found; payment logged for manual reconciliation"
            return base

        base.booking_found = True
        if booking.status is BookingStatus.CONFIRMED:
            return await self._already_confirmed(base, booking)

        try:
            booking, already = await self.ledger.confirm_booking(booking.id, gateway.ref_id, base.transaction_uuid)
        except (SlotBookError, SQLAlchemyError) as exc:
            logger.exception("Booking %s could not be confirmed after payment %s", booking.id, base.transaction_uuid)
            problem = exc if isinstance(exc, SlotBookError) else SlotBookError(str(exc))
            await self._reconcile_later(base, booking, problem)
            base.booking_confirmed = False
            base.booking_update_failed = True
            base.booking_status = booking.status.value
            base.message = "Payment verified but failed to update booking; payment logged for manual reconciliation"
            return base

        if already:
            return await self._already_confirmed(base, booking)

        await self._log(
            base,
            PaymentLogStatus.SUCCESS,
            booking,
            extra={
                "esewa_status": base.status,
                "booking_date": booking.booking_date.isoformat(),
                "booking_time": booking.start_time,
            },
        )
        base.booking_confirmed = True
        base.booking_status = BookingStatus.CONFIRMED.value
        return base

    async def _already_confirmed(self, base: VerifyResult, booking: Booking) -> VerifyResult:
        logger.info("Booking %s already confirmed, logging duplicate verification", booking.id)
        await self._log(
            base,
            PaymentLogStatus.SUCCESS,
            booking,
            extra={"esewa_status": base.status, "already_confirmed": True},
        )
        base.already_confirmed = True
        base.booking_status = BookingStatus.CONFIRMED.value
        return base

    async def _on_failure(
        self, base: VerifyResult, gateway: GatewayStatusResponse, booking: Booking | None
    ) -> VerifyResult:
        reason = f"eSewa reported {base.status}"
        if booking is not None:
            booking, changed = await self.ledger.mark_payment_failed(booking.id, reason)
            base.booking_found = True
            base.booking_status = booking.status.value
            if not changed:
                logger.warning("Payment %s failed but booking %s is %s", base.transaction_uuid, booking.id, booking.status.value)
        else:
            base.booking_found = False
        await self._log(base, PaymentLogStatus.FAILURE, booking, extra={"esewa_status": base.status, "reason": reason})
        return base

    # ------------------------------------------------------------------
    # Quotes and signatures
    # ------------------------------------------------------------------

    async def compute_amount(
        self,
        venue_id: str | None = None,
        day: str | date | None = None,
        start_time: str | None = None,
        slots: int | None = None,
        booking: dict | None = None,
    ) -> AmountQuote:
        if booking:
            return AmountQuote(computed=compute_amounts_from_booking(booking))

        if not venue_id or not day or not start_time:
            raise ValidationError("Missing venueId, date or startTime")
        slot_date = parse_date(day)
        parse_hhmm(start_time)
        slots_count = to_int(slots or 1, "slots")
        if slots_count < 1:
            raise ValidationError("slots must be at least 1")

        async with self.session_factory() as session:
            venue = await session.get(Venue, venue_id)
        if venue is None:
            raise NotFound("Venue not found")

        config, conflicts = await self.ledger.get_conflicts(venue_id, slot_date, start_time, slots_count)
        computed = compute_amounts_from_venue(
            venue.price_per_hour, config.slot_duration_minutes, slots_count, venue.advance_percentage
        )
        return AmountQuote(
            computed=computed,
            available=not conflicts,
            conflicts=conflicts,
            slot_duration=config.slot_duration_minutes,
            slots_count=slots_count,
        )

    def generate_signature(
        self, total_amount: str | None, transaction_uuid: str | None, product_code: str | None
    ) -> tuple[str, str]:
        """Sign an arbitrary form. Returns ``(signature, message)``."""
        if not total_amount or not transaction_uuid or not product_code:
            raise ValidationError("Missing totalAmount, transactionUuid or productCode")
        if not self.gateway.configured:
            raise GatewayNotConfigured("Payment gateway not configured")
        message = esewa.payment_message(str(total_amount), transaction_uuid, product_code)
        return esewa.sign(message, self.gateway.secret), message
