"""Venue and slot configuration models.

Venue = a bookable place (futsal ground, court, hall) run by one manager.
VenueSlots = the venue's recurring schedule: opening hours, slot length and
active weekdays. It is also the lock/version row for the venue's exception
aggregate: every slot mutation locks it and bumps ``version``.
"""

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.orm.attributes import flag_modified

from slotbook.models.base import Base, JSONType, TimestampMixin, utcnow

if TYPE_CHECKING:
    from slotbook.models.slot_exception import SlotException


class Venue(TimestampMixin, Base):
    __tablename__ = "venues"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    managed_by: Mapped[str | None] = mapped_column(String(128), index=True)  # manager user id
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Pricing (rupees)
    price_per_hour: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    advance_percentage: Mapped[int | None] = mapped_column(Integer)  # falls back to settings

    slot_config: Mapped["VenueSlots | None"] = relationship(back_populates="venue", lazy="raise")

    def __repr__(self) -> str:
        return f"<Venue {self.id}>"


class VenueSlots(Base):
    __tablename__ = "venue_slots"

    venue_id: Mapped[str] = mapped_column(ForeignKey("venues.id"), primary_key=True)

    # Local wall-clock "HH:MM" in ``timezone``
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    slot_duration_minutes: Mapped[int] = mapped_column(Integer, default=60, nullable=False)
    days_of_week: Mapped[list] = mapped_column(JSONType, default=lambda: [0, 1, 2, 3, 4, 5, 6])  # 0=Sun..6=Sat
    timezone: Mapped[str] = mapped_column(String(64), default="Asia/Kathmandu", nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    venue: Mapped["Venue"] = relationship(back_populates="slot_config", lazy="raise")
    exceptions: Mapped[list["SlotException"]] = relationship(
        back_populates="venue_slots",
        lazy="raise",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    def touch(self, now: datetime) -> None:
        """Mark the aggregate as modified so the version check runs on flush.

        Flagged explicitly: assigning an unchanged timestamp would not emit an UPDATE.
        """
        self.updated_at = now
        flag_modified(self, "updated_at")

    def __repr__(self) -> str:
        return f"<VenueSlots {self.venue_id} {self.start_time}-{self.end_time}/{self.slot_duration_minutes}m v{self.version}>"
