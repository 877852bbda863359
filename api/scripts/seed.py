"""Seed the database with a few Kathmandu futsal venues for local development.

Run with: python -m scripts.seed
Creates the venues, their slot configurations, and prints bearer tokens for a
test manager, user and admin.
"""

import asyncio
from decimal import Decimal

from sqlalchemy import select

from slotbook.core.auth import ROLE_ADMIN, ROLE_MANAGER, ROLE_USER, create_access_token
from slotbook.core.database import async_session_factory, engine
from slotbook.models import Base, Venue
from slotbook.services.slot_ledger import SlotLedger

MANAGER_ID = "manager-dev"
USER_ID = "user-dev"
ADMIN_ID = "admin-dev"

VENUES = [
    {
        "id": "baneshwor-futsal",
        "name": "Baneshwor Futsal",
        "price_per_hour": Decimal("1500"),
        "advance_percentage": 20,
        "slots": {"start_time": "06:00", "end_time": "21:00", "slot_duration_minutes": 60, "days_of_week": [0, 1, 2, 3, 4, 5, 6]},
    },
    {
        "id": "lalitpur-arena",
        "name": "Lalitpur Arena",
        "price_per_hour": Decimal("2000"),
        "advance_percentage": 25,
        "slots": {"start_time": "07:00", "end_time": "22:00", "slot_duration_minutes": 90, "days_of_week": [0, 1, 2, 3, 4, 5]},
    },
    {
        "id": "kirtipur-court",
        "name": "Kirtipur Badminton Court",
        "price_per_hour": Decimal("800"),
        "advance_percentage": None,
        "slots": {"start_time": "06:00", "end_time": "20:00", "slot_duration_minutes": 30, "days_of_week": [1, 2, 3, 4, 5, 6]},
    },
]


async def seed():
    # Create tables directly; dev databases only
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session_factory() as db:
        # Check if already seeded
        result = await db.execute(select(Venue).where(Venue.id == VENUES[0]["id"]))
        if result.scalar_one_or_none():
            print("Database already seeded - skipping.")
            return

        for data in VENUES:
            fields = {k: v for k, v in data.items() if k != "slots"}
            db.add(Venue(managed_by=MANAGER_ID, **fields))
        await db.commit()

    ledger = SlotLedger()
    for data in VENUES:
        await ledger.upsert_config(data["id"], **data["slots"])

    print(f"Seeded {len(VENUES)} venues:")
    for data in VENUES:
        slots = data["slots"]
        print(f"  {data['id']}: {slots['start_time']}-{slots['end_time']} / {slots['slot_duration_minutes']}m")
    print("Bearer tokens:")
    print(f"  manager: {create_access_token(MANAGER_ID, ROLE_MANAGER)}")
    print(f"  user:    {create_access_token(USER_ID, ROLE_USER)}")
    print(f"  admin:   {create_access_token(ADMIN_ID, ROLE_ADMIN)}")


if __name__ == "__main__":
    asyncio.run(seed())
