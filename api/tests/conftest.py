"""Shared test fixtures.

Each test gets its own SQLite database file (aiosqlite, no pooling so every
session opens a fresh connection in the test's event loop), a frozen clock,
and an eSewa gateway backed by ``httpx.MockTransport``.
"""

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from slotbook.core.auth import ROLE_ADMIN, ROLE_MANAGER, ROLE_USER, create_access_token
from slotbook.core.database import get_db
from slotbook.core.dependencies import get_gateway, get_ledger
from slotbook.main import app
from slotbook.models import Base, Venue
from slotbook.services.esewa import EsewaGateway
from slotbook.services.payments import PaymentService
from slotbook.services.slot_ledger import SlotLedger

# Monday 2026-03-02 08:45 in Kathmandu (UTC+05:45)
FROZEN_NOW = datetime(2026, 3, 2, 3, 0, tzinfo=UTC)
TODAY = date(2026, 3, 2)
TOMORROW = date(2026, 3, 3)

ESEWA_TEST_SECRET = "8gBm/:&EnhH.1/q"
PRODUCT_CODE = "EPAYTEST"

VENUE_ID = "venue-1"
MANAGER_ID = "manager-1"
USER_ID = "user-1"
OTHER_USER_ID = "user-2"
ADMIN_ID = "admin-1"


class FrozenClock:
    def __init__(self, now: datetime):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class EsewaStub:
    """Stands in for the eSewa status endpoint. Unknown transactions are COMPLETE."""

    def __init__(self):
        self.statuses: dict[str, str] = {}
        self.fail_status: int | None = None
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, text="gateway unavailable")
        params = request.url.params
        txn = params["transaction_uuid"]
        return httpx.Response(
            200,
            json={
                "product_code": params["product_code"],
                "transaction_uuid": txn,
                "total_amount": params["total_amount"],
                "status": self.statuses.get(txn, "COMPLETE"),
                "ref_id": "000AWEO",
            },
        )


@pytest.fixture
def clock():
    return FrozenClock(FROZEN_NOW)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'slotbook.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def ledger(session_factory, clock):
    return SlotLedger(session_factory=session_factory, clock=clock, hold_ttl_minutes=5)


@pytest.fixture
def esewa_stub():
    return EsewaStub()


@pytest.fixture
def gateway(esewa_stub):
    return EsewaGateway(
        verify_url="https://esewa.test/api/epay/transaction/status/",
        secret=ESEWA_TEST_SECRET,
        transport=httpx.MockTransport(esewa_stub.handler),
    )


@pytest.fixture
def payments(ledger, gateway):
    return PaymentService(ledger, gateway, product_code=PRODUCT_CODE)


@pytest.fixture
async def venue(session_factory, ledger):
    """A venue open 06:00-21:00 every day in one-hour slots, Rs 1000/hour, 20% advance."""
    async with session_factory() as db:
        db.add(
            Venue(
                id=VENUE_ID,
                name="Test Futsal",
                managed_by=MANAGER_ID,
                price_per_hour=Decimal("1000"),
                advance_percentage=20,
            )
        )
        await db.commit()
    await ledger.upsert_config(VENUE_ID, "06:00", "21:00", 60, [0, 1, 2, 3, 4, 5, 6], "Asia/Kathmandu")
    return VENUE_ID


@pytest.fixture
async def client(session_factory, ledger, gateway):
    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_ledger] = lambda: ledger
    app.dependency_overrides[get_gateway] = lambda: gateway
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def _auth(user_id: str, role: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id, role)}"}


@pytest.fixture
def user_headers():
    return _auth(USER_ID, ROLE_USER)


@pytest.fixture
def other_user_headers():
    return _auth(OTHER_USER_ID, ROLE_USER)


@pytest.fixture
def manager_headers():
    return _auth(MANAGER_ID, ROLE_MANAGER)


@pytest.fixture
def admin_headers():
    return _auth(ADMIN_ID, ROLE_ADMIN)
