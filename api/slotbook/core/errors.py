"""Domain errors and their HTTP mapping.

Services raise these; a single exception handler on the app turns them into
structured JSON responses so routes stay thin.
"""

from fastapi import Request, status
from fastapi.responses import JSONResponse


class SlotBookError(Exception):
    """Base class for every error the engine reports to a caller."""

    code = "error"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_body(self) -> dict:
        return {"detail": self.message, "error": self.code}


class ValidationError(SlotBookError):
    """Missing or malformed request fields. Raised before any write."""

    code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class NotFound(SlotBookError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class Forbidden(SlotBookError):
    code = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN


class SlotUnavailable(SlotBookError):
    """The slot is taken (or was taken by a concurrent transaction)."""

    code = "slot_unavailable"
    status_code = status.HTTP_409_CONFLICT


class AlreadyBooked(SlotUnavailable):
    code = "already_booked"


class InvalidTransition(SlotBookError):
    """A booking status change the state machine does not allow."""

    code = "invalid_transition"
    status_code = status.HTTP_409_CONFLICT

    def __init__(self, booking_id: str, current: str, target: str):
        self.booking_id = booking_id
        self.current = current
        self.target = target
        super().__init__(f"Booking {booking_id} cannot move from {current} to {target}")


class CancellationClosed(SlotBookError):
    """Too close to the slot start for the owner to cancel."""

    code = "cancellation_closed"
    status_code = status.HTTP_409_CONFLICT


class GatewayNotConfigured(SlotBookError):
    code = "gateway_not_configured"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class InvoiceNotConfigured(SlotBookError):
    code = "invoice_not_configured"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class GatewayUnavailable(SlotBookError):
    """Network failure or non-2xx answer from the payment gateway."""

    code = "gateway_unavailable"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: str | None = None):
        self.details = details
        super().__init__(message)

    def to_body(self) -> dict:
        body = super().to_body()
        body["verified"] = False
        if self.details:
            body["details"] = self.details
        return body


class ReconciliationAmbiguous(SlotBookError):
    """Payment confirmed by the gateway but no booking could be matched.

    Never surfaced to the gateway; it is logged and audited for a human.
    """

    code = "reconciliation_ambiguous"
    status_code = status.HTTP_200_OK


async def slotbook_error_handler(request: Request, exc: SlotBookError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())
