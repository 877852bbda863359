"""Celery worker configuration and periodic tasks.

Tasks run the async services with ``asyncio.run``; each run gets a fresh
event loop, so the engine's pooled connections are disposed afterwards.
"""

import asyncio
import logging

from celery import Celery

from slotbook.core.config import settings
from slotbook.core.database import engine
from slotbook.services.esewa import EsewaGateway
from slotbook.services.maintenance import reconcile_pending_payments, sweep_expired_holds
from slotbook.services.payments import PaymentService
from slotbook.services.slot_ledger import SlotLedger

logger = logging.getLogger(__name__)

celery_app = Celery(
    "slotbook",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone=settings.default_timezone,
    enable_utc=True,
    beat_schedule={
        "sweep-expired-holds": {
            "task": "slotbook.sweep_expired_holds",
            "schedule": float(settings.sweep_interval_seconds),
        },
        "reconcile-pending-payments": {
            "task": "slotbook.reconcile_pending_payments",
            "schedule": float(settings.reconcile_interval_seconds),
        },
    },
)


async def _run_sweep() -> dict:
    try:
        return await sweep_expired_holds(SlotLedger())
    finally:
        await engine.dispose()


async def _run_reconcile() -> dict:
    try:
        return await reconcile_pending_payments(PaymentService(SlotLedger(), EsewaGateway()))
    finally:
        await engine.dispose()


@celery_app.task(name="slotbook.sweep_expired_holds")
def sweep_expired_holds_task() -> dict:
    return asyncio.run(_run_sweep())


@celery_app.task(name="slotbook.reconcile_pending_payments")
def reconcile_pending_payments_task() -> dict:
    if not settings.esewa_secret_key:
        logger.warning("Skipping payment reconciliation: eSewa secret key is not configured")
        return {"skipped": True}
    return asyncio.run(_run_reconcile())
