"""Admin-triggered housekeeping. The same jobs run on the Celery beat schedule."""

from fastapi import APIRouter, Depends

from slotbook.core.dependencies import CurrentUser, get_ledger, get_payment_service, require_admin
from slotbook.schemas import ReconcileOut, SweepOut
from slotbook.services.maintenance import reconcile_pending_payments, sweep_expired_holds
from slotbook.services.payments import PaymentService
from slotbook.services.slot_ledger import SlotLedger

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/sweep", response_model=SweepOut)
async def sweep(_: CurrentUser = Depends(require_admin), ledger: SlotLedger = Depends(get_ledger)):
    return await sweep_expired_holds(ledger)


@router.post("/reconcile", response_model=ReconcileOut)
async def reconcile(
    _: CurrentUser = Depends(require_admin),
    service: PaymentService = Depends(get_payment_service),
):
    return await reconcile_pending_payments(service)
