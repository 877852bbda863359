"""Booking model.

A booking is one reservation attempt for a single slot. It is the user-facing
record with its own status machine, cross-referenced with the slot exception
(held or booked) that carries the same ``booking_id``. Bookings are never
deleted; cancellation and expiry are status transitions.
"""

import enum
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Date, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from slotbook.models.base import Base, JSONType, NormalizedEnum, TimestampMixin
from slotbook.models.slot_exception import BookingType


class BookingStatus(enum.StrEnum):
    PENDING_PAYMENT = "pending_payment"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAYMENT_FAILED = "payment_failed"
    NOT_FOUND = "not_found"  # display only: gateway has no record of the transaction

    @classmethod
    def normalize(cls, value: "str | BookingStatus") -> "BookingStatus":
        """Map any historical spelling onto the canonical status."""
        if isinstance(value, BookingStatus):
            return value
        key = value.strip().lower()
        try:
            return LEGACY_BOOKING_STATUSES[key]
        except KeyError:
            raise ValueError(f"Unknown booking status: {value!r}") from None


LEGACY_BOOKING_STATUSES: dict[str, BookingStatus] = {
    **{s.value: s for s in BookingStatus},
    "pending": BookingStatus.PENDING_PAYMENT,
    "held": BookingStatus.PENDING_PAYMENT,
    "cancelled_by_manager": BookingStatus.CANCELLED,
    "canceled": BookingStatus.CANCELLED,
    "failed": BookingStatus.PAYMENT_FAILED,
}

# Allowed transitions out of each status. Everything not listed is rejected.
TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING_PAYMENT: frozenset(
        {
            BookingStatus.CONFIRMED,
            BookingStatus.CANCELLED,
            BookingStatus.EXPIRED,
            BookingStatus.PAYMENT_FAILED,
        }
    ),
    # A payment started before the hold lapsed can still settle at the gateway
    BookingStatus.EXPIRED: frozenset({BookingStatus.CONFIRMED, BookingStatus.PAYMENT_FAILED}),
    BookingStatus.PAYMENT_FAILED: frozenset({BookingStatus.CONFIRMED}),
}


class Booking(TimestampMixin, Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    venue_id: Mapped[str] = mapped_column(ForeignKey("venues.id"), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(128))  # None for manager-entered physical bookings

    # When (venue local time)
    booking_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)

    booking_type: Mapped[BookingType] = mapped_column(
        NormalizedEnum(BookingType),
        default=BookingType.ONLINE,
        nullable=False,
    )
    status: Mapped[BookingStatus] = mapped_column(
        NormalizedEnum(BookingStatus),
        default=BookingStatus.PENDING_PAYMENT,
        nullable=False,
    )
    hold_expires_at: Mapped[datetime | None] = mapped_column()

    # Amounts are computed server-side when the hold is granted (rupees)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    advance_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    due_amount: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))

    # Payment
    transaction_uuid: Mapped[str | None] = mapped_column(String(128), index=True)
    payment_initiated_at: Mapped[datetime | None] = mapped_column()
    payment_ref_id: Mapped[str | None] = mapped_column(String(128))
    verified_at: Mapped[datetime | None] = mapped_column()
    failure_reason: Mapped[str | None] = mapped_column(Text)

    # Lifecycle timestamps
    cancelled_at: Mapped[datetime | None] = mapped_column()
    cancelled_by: Mapped[str | None] = mapped_column(String(128))
    expired_at: Mapped[datetime | None] = mapped_column()

    # Walk-in details (physical bookings)
    customer_name: Mapped[str | None] = mapped_column(String(200))
    customer_phone: Mapped[str | None] = mapped_column(String(50))
    notes: Mapped[str | None] = mapped_column(Text)

    extra: Mapped[dict | None] = mapped_column(JSONType, default=dict)

    __table_args__ = (
        Index("ix_bookings_venue_date", "venue_id", "booking_date"),
        Index("ix_bookings_user", "user_id", "booking_date"),
        Index("ix_bookings_status_hold", "status", "hold_expires_at"),
    )

    def can_transition(self, target: BookingStatus) -> bool:
        return target in TRANSITIONS.get(self.status, frozenset())

    def is_hold_expired(self, now: datetime) -> bool:
        return (
            self.status is BookingStatus.PENDING_PAYMENT
            and self.hold_expires_at is not None
            and self.hold_expires_at <= now
        )

    def __repr__(self) -> str:
        return f"<Booking {self.id} {self.booking_date} {self.start_time}-{self.end_time} {self.status.value}>"
