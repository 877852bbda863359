"""eSewa payment routes: initiate, verify, compute-amount, generate-signature."""

import logging

from fastapi import APIRouter, Depends

from slotbook.core.dependencies import get_payment_service
from slotbook.schemas import (
    AmountsOut,
    ComputeAmountIn,
    ComputeAmountOut,
    InitiateIn,
    InitiateOut,
    SignatureIn,
    SignatureOut,
    VerifyIn,
    VerifyOut,
)
from slotbook.services.esewa import SIGNED_FIELD_NAMES
from slotbook.services.payments import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment", tags=["payment"])


@router.post("/initiate", response_model=InitiateOut)
async def initiate_payment(body: InitiateIn, service: PaymentService = Depends(get_payment_service)):
    result = await service.initiate(body.booking_id)
    return InitiateOut.model_validate(result)


@router.post("/verify", response_model=VerifyOut, response_model_exclude_none=True)
async def verify_payment(body: VerifyIn, service: PaymentService = Depends(get_payment_service)):
    """Ask the gateway for the transaction status and reconcile the booking.

    Safe to call repeatedly; a confirmed booking is only confirmed once.
    """
    logger.info("Verification request for %s", body.transaction_uuid)
    result = await service.verify(body.transaction_uuid, body.product_code, body.total_amount)
    return VerifyOut.model_validate(result)


@router.post("/compute-amount", response_model=ComputeAmountOut, response_model_exclude_none=True)
async def compute_amount(body: ComputeAmountIn, service: PaymentService = Depends(get_payment_service)):
    quote = await service.compute_amount(
        venue_id=body.venue_id,
        day=body.date,
        start_time=body.start_time,
        slots=body.slots,
        booking=body.booking,
    )
    return ComputeAmountOut(
        computed=AmountsOut.model_validate(quote.computed),
        available=quote.available,
        conflicts=quote.conflicts if quote.available is not None else None,
        slot_duration=quote.slot_duration,
        slots_count=quote.slots_count,
    )


@router.post("/generate-signature", response_model=SignatureOut)
async def generate_signature(body: SignatureIn, service: PaymentService = Depends(get_payment_service)):
    signature, message = service.generate_signature(body.total_amount, body.transaction_uuid, body.product_code)
    return SignatureOut(signature=signature, message=message, signed_field_names=SIGNED_FIELD_NAMES)
