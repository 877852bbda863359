"""All models imported here so ``Base.metadata`` sees every table."""

from slotbook.models.base import Base
from slotbook.models.booking import Booking, BookingStatus
from slotbook.models.payment import PaymentAuditEntry, PaymentLogStatus
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

__all__ = [
    "Base",
    "Venue",
    "VenueSlots",
    "SlotException",
    "BlockedSlot",
    "BookedSlot",
    "HeldSlot",
    "ReservedSlot",
    "ExceptionKind",
    "BookingType",
    "BookedSlotStatus",
    "Booking",
    "BookingStatus",
    "PaymentAuditEntry",
    "PaymentLogStatus",
]
