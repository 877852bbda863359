"""Payment audit log.

Append-only record of every payment event the gateway reports to us. Rows are
written even when the matching booking cannot be found or updated, so a
confirmed payment is never silently lost; ``needs_reconciliation`` marks the
rows a human has to look at.
"""

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, Enum, Index, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from slotbook.models.base import Base, JSONType, utcnow


class PaymentLogStatus(enum.StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"
    REFUNDED = "refunded"


class PaymentAuditEntry(Base):
    __tablename__ = "payment_audit_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    transaction_uuid: Mapped[str] = mapped_column(String(128), nullable=False)
    booking_id: Mapped[str | None] = mapped_column(String(64))
    user_id: Mapped[str | None] = mapped_column(String(128))
    venue_id: Mapped[str | None] = mapped_column(String(64))
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    status: Mapped[PaymentLogStatus] = mapped_column(
        Enum(PaymentLogStatus, name="payment_log_status", values_callable=lambda e: [x.value for x in e]),
        nullable=False,
    )
    method: Mapped[str] = mapped_column(String(20), default="esewa", nullable=False)
    product_code: Mapped[str | None] = mapped_column(String(50))
    ref_id: Mapped[str | None] = mapped_column(String(128))  # gateway reference
    needs_reconciliation: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    extra: Mapped[dict | None] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payment_audit_txn", "transaction_uuid"),
        Index("ix_payment_audit_booking", "booking_id"),
        Index("ix_payment_audit_reconcile", "needs_reconciliation", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<PaymentAuditEntry {self.transaction_uuid} {self.status.value} {self.amount}>"
