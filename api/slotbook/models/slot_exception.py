"""Slot exceptions: deviations from a venue's default availability.

A slot with no exception row is available. Each row is one variant of a
tagged union (single-table inheritance on ``kind``):

BlockedSlot  = closed by the manager (maintenance, private event)
BookedSlot   = taken by a confirmed or payment-pending booking
HeldSlot     = short exclusive claim while the user pays
ReservedSlot = set aside by the manager without a booking

The unique key (venue_id, slot_date, start_time) is the no-double-booking
guarantee: a slot can carry at most one exception at a time.
"""

import enum
from datetime import date, datetime
from typing import ClassVar

from sqlalchemy import Date, Enum, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from slotbook.models.base import Base, NormalizedEnum, utcnow


class ExceptionKind(enum.StrEnum):
    BLOCKED = "blocked"
    BOOKED = "booked"
    HELD = "held"
    RESERVED = "reserved"


class BookingType(enum.StrEnum):
    PHYSICAL = "physical"  # entered by the manager at the venue
    ONLINE = "online"  # booked and paid through the website

    @classmethod
    def normalize(cls, value: str) -> "BookingType":
        # Older records used "website" for online bookings
        value = value.strip().lower()
        if value == "website":
            return cls.ONLINE
        return cls(value)


class BookedSlotStatus(enum.StrEnum):
    CONFIRMED = "confirmed"
    PENDING_PAYMENT = "pending_payment"


def _enum(cls: type[enum.Enum], name: str) -> Enum:
    return Enum(cls, name=name, values_callable=lambda e: [x.value for x in e])


class SlotException(Base):
    __tablename__ = "slot_exceptions"

    id: Mapped[int] = mapped_column(primary_key=True)
    venue_id: Mapped[str] = mapped_column(ForeignKey("venue_slots.venue_id"), nullable=False)
    slot_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)  # "HH:MM"
    kind: Mapped[ExceptionKind] = mapped_column(_enum(ExceptionKind, "slot_exception_kind"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    # Shared by booked and held
    booking_id: Mapped[str | None] = mapped_column(String(64), index=True)
    user_id: Mapped[str | None] = mapped_column(String(128))

    # Blocked
    reason: Mapped[str | None] = mapped_column(Text)
    blocked_by: Mapped[str | None] = mapped_column(String(128))

    # Booked
    booking_type: Mapped[BookingType | None] = mapped_column(NormalizedEnum(BookingType))
    booking_status: Mapped[BookedSlotStatus | None] = mapped_column(_enum(BookedSlotStatus, "booked_slot_status"))
    customer_name: Mapped[str | None] = mapped_column(String(200))
    customer_phone: Mapped[str | None] = mapped_column(String(50))
    notes: Mapped[str | None] = mapped_column(Text)

    # Held
    hold_expires_at: Mapped[datetime | None] = mapped_column()
    transaction_uuid: Mapped[str | None] = mapped_column(String(128))

    # Reserved
    note: Mapped[str | None] = mapped_column(Text)
    reserved_by: Mapped[str | None] = mapped_column(String(128))

    venue_slots: Mapped["VenueSlots"] = relationship(back_populates="exceptions", lazy="raise")

    __table_args__ = (UniqueConstraint("venue_id", "slot_date", "start_time", name="uq_slot_exceptions_key"),)
    __mapper_args__ = {"polymorphic_on": "kind"}

    variant: ClassVar[ExceptionKind]

    @property
    def key(self) -> tuple[date, str]:
        return self.slot_date, self.start_time

    def occupies(self, now: datetime) -> bool:
        """Whether this exception currently makes the slot unavailable."""
        return True

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.venue_id} {self.slot_date} {self.start_time}>"


class BlockedSlot(SlotException):
    __mapper_args__ = {"polymorphic_identity": ExceptionKind.BLOCKED}
    variant = ExceptionKind.BLOCKED

    @property
    def blocked_at(self) -> datetime:
        return self.created_at


class BookedSlot(SlotException):
    __mapper_args__ = {"polymorphic_identity": ExceptionKind.BOOKED}
    variant = ExceptionKind.BOOKED


class HeldSlot(SlotException):
    __mapper_args__ = {"polymorphic_identity": ExceptionKind.HELD}
    variant = ExceptionKind.HELD

    def is_active(self, now: datetime) -> bool:
        return self.hold_expires_at is not None and self.hold_expires_at > now

    def occupies(self, now: datetime) -> bool:
        return self.is_active(now)


class ReservedSlot(SlotException):
    __mapper_args__ = {"polymorphic_identity": ExceptionKind.RESERVED}
    variant = ExceptionKind.RESERVED

    @property
    def reserved_at(self) -> datetime:
        return self.created_at


# Import for relationship resolution
from slotbook.models.venue import VenueSlots  # noqa: E402
