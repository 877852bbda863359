"""Pydantic schemas for API serialisation.

The wire format is camelCase. Request fields the services validate themselves
are optional here so that a missing field is a 400 from the service rather
than a 422 from FastAPI.
"""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- Slots ---


class SlotOut(CamelModel):
    date: date
    start_time: str
    end_time: str
    status: str
    booking_type: str | None = None
    reason: str | None = None
    note: str | None = None
    hold_expires_at: datetime | None = None


class SlotsOut(CamelModel):
    venue_id: str
    date_from: date
    date_to: date
    slots: list[SlotOut]


class SlotConfigIn(CamelModel):
    start_time: str | None = None
    end_time: str | None = None
    slot_duration_minutes: int | None = None
    days_of_week: list[int] | None = None
    timezone: str | None = None


class SlotConfigOut(CamelModel):
    venue_id: str
    start_time: str
    end_time: str
    slot_duration_minutes: int
    days_of_week: list[int]
    timezone: str
    version: int
    updated_at: datetime


class SlotKeyIn(CamelModel):
    date: str | None = None
    start_time: str | None = None


class BlockSlotIn(SlotKeyIn):
    reason: str | None = None


class ReserveSlotIn(SlotKeyIn):
    note: str | None = None


class ReleaseHoldIn(SlotKeyIn):
    booking_id: str | None = None


class SlotChangeOut(CamelModel):
    changed: bool


class PhysicalBookingIn(SlotKeyIn):
    customer_name: str | None = None
    customer_phone: str | None = None
    notes: str | None = None


# --- Bookings ---


class BookingCreate(CamelModel):
    venue_id: str | None = None
    date: str | None = None
    start_time: str | None = None


class BookingOut(CamelModel):
    id: str
    venue_id: str
    user_id: str | None
    booking_date: date
    start_time: str
    end_time: str
    booking_type: str
    status: str
    amount: float
    advance_amount: float | None
    due_amount: float | None
    hold_expires_at: datetime | None
    transaction_uuid: str | None
    payment_ref_id: str | None
    failure_reason: str | None
    customer_name: str | None
    customer_phone: str | None
    notes: str | None
    created_at: datetime
    verified_at: datetime | None
    cancelled_at: datetime | None
    expired_at: datetime | None


class CheckInTokenOut(CamelModel):
    booking_id: str
    token: str
    issued_at: datetime


class VerifyQrIn(CamelModel):
    qr: str | None = None


class VerifyQrOut(CamelModel):
    ok: bool = True
    stale: bool
    issued_at: datetime | None = None
    booking: BookingOut


# --- Payments ---


class InitiateIn(CamelModel):
    booking_id: str | None = None


class InitiateOut(CamelModel):
    success: bool = True
    transaction_uuid: str
    signature: str
    payment_url: str
    payment_params: dict


class VerifyIn(CamelModel):
    transaction_uuid: str | None = None
    product_code: str | None = None
    total_amount: str | None = None

    @field_validator("total_amount", mode="before")
    @classmethod
    def _amount_as_text(cls, value):
        return None if value is None else str(value)


class VerifyOut(CamelModel):
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


class ComputeAmountIn(CamelModel):
    venue_id: str | None = None
    date: str | None = None
    start_time: str | None = None
    slots: int | None = None
    booking: dict | None = None


class AmountsOut(CamelModel):
    total_amount: float
    advance_amount: float
    due_amount: float
    price_per_hour: float
    advance_percentage: int


class ComputeAmountOut(CamelModel):
    success: bool = True
    computed: AmountsOut
    available: bool | None = None
    conflicts: list[str] | None = None
    slot_duration: int | None = None
    slots_count: int | None = None


class SignatureIn(CamelModel):
    total_amount: str | None = None
    transaction_uuid: str | None = None
    product_code: str | None = None

    @field_validator("total_amount", mode="before")
    @classmethod
    def _amount_as_text(cls, value):
        return None if value is None else str(value)


class SignatureOut(CamelModel):
    signature: str
    message: str
    signed_field_names: str


# --- Maintenance ---


class SweepOut(CamelModel):
    venues: int
    holds_removed: int
    bookings_expired: int


class ReconcileOut(CamelModel):
    checked: int
    confirmed: int
    failed: int
    unchanged: int
    errors: int
