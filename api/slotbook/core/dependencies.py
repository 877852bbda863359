"""FastAPI dependencies for injection into route handlers."""

from dataclasses import dataclass

from fastapi import Depends, HTTPException, Path, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from slotbook.core.auth import ROLE_ADMIN, ROLE_MANAGER, ROLE_USER, decode_token
from slotbook.core.database import get_db
from slotbook.core.errors import Forbidden, NotFound
from slotbook.models.venue import Venue
from slotbook.services.esewa import EsewaGateway
from slotbook.services.payments import PaymentService
from slotbook.services.slot_ledger import SlotLedger

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

# One ledger per process: its per-venue locks must be shared by all requests
_ledger = SlotLedger()


def get_ledger() -> SlotLedger:
    return _ledger


def get_gateway() -> EsewaGateway:
    return EsewaGateway()


def get_payment_service(
    ledger: SlotLedger = Depends(get_ledger),
    gateway: EsewaGateway = Depends(get_gateway),
) -> PaymentService:
    return PaymentService(ledger, gateway)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> CurrentUser:
    """Read the verified user id and role from the JWT bearer token."""
    if credentials is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    try:
        payload = decode_token(credentials.credentials)
        user_id = str(payload["sub"])
    except (JWTError, KeyError):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from None

    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return CurrentUser(id=user_id, role=payload.get("role", ROLE_USER))


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return user


# ---------------------------------------------------------------------------
# Venue-level access
# ---------------------------------------------------------------------------


async def check_venue_manager(db: AsyncSession, venue_id: str, user: CurrentUser) -> Venue:
    """The venue's own manager, or any admin. Raises NotFound / Forbidden."""
    venue = await db.get(Venue, venue_id)
    if venue is None:
        raise NotFound("Venue not found")
    if user.is_admin:
        return venue
    if user.role != ROLE_MANAGER or venue.managed_by != user.id:
        raise Forbidden("You do not manage this venue")
    return venue


async def require_venue_manager(
    venue_id: str = Path(...),
    user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CurrentUser:
    await check_venue_manager(db, venue_id, user)
    return user
