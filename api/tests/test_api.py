"""API tests: health, auth, availability, slot management, bookings, payment, maintenance."""

from datetime import timedelta

import pytest

from slotbook.core.dependencies import get_gateway
from slotbook.main import app
from slotbook.services.esewa import EsewaGateway
from tests.conftest import TODAY, TOMORROW, VENUE_ID

API = "/api/v1"
VENUE = f"{API}/venues/{VENUE_ID}"


def _by_start(body: dict) -> dict:
    return {s["startTime"]: s for s in body["slots"]}


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_slots_show_blocked_slot(client, ledger, venue):
    await ledger.block_slot(venue, TOMORROW, "09:00", reason="maintenance")

    resp = await client.get(f"{VENUE}/slots", params={"from": TOMORROW.isoformat(), "to": TOMORROW.isoformat()})

    assert resp.status_code == 200
    body = resp.json()
    assert body["venueId"] == VENUE_ID
    slots = _by_start(body)
    assert len(slots) == 15
    assert slots["09:00"]["status"] == "blocked"
    assert slots["09:00"]["reason"] == "maintenance"
    assert slots["10:00"]["status"] == "available"
    assert slots["10:00"]["endTime"] == "11:00"


@pytest.mark.asyncio
async def test_slots_default_range_is_one_week(client, venue):
    resp = await client.get(f"{VENUE}/slots")
    assert resp.status_code == 200
    body = resp.json()
    assert body["dateFrom"] == TODAY.isoformat()
    assert body["dateTo"] == (TODAY + timedelta(days=6)).isoformat()


@pytest.mark.asyncio
async def test_slots_default_window_starts_on_venue_local_date(client, venue, clock):
    # 20:30 UTC is already 02:15 the next morning in Kathmandu
    clock.current = clock.current.replace(hour=20, minute=30)
    resp = await client.get(f"{VENUE}/slots")
    body = resp.json()
    assert body["dateFrom"] == TOMORROW.isoformat()
    assert body["dateTo"] == (TOMORROW + timedelta(days=6)).isoformat()
    assert _by_start(body)["06:00"]["date"] == TOMORROW.isoformat()


@pytest.mark.asyncio
async def test_slots_hide_customer_details(client, ledger, venue):
    await ledger.create_physical_booking(venue, TOMORROW, "18:00", "manager-1", customer_name="Sita")
    resp = await client.get(f"{VENUE}/slots", params={"from": TOMORROW.isoformat(), "to": TOMORROW.isoformat()})
    slot = _by_start(resp.json())["18:00"]
    assert slot["status"] == "booked"
    assert slot["bookingType"] == "physical"
    assert "customerName" not in slot


@pytest.mark.asyncio
async def test_slots_errors(client, venue):
    resp = await client.get(f"{API}/venues/nowhere/slots")
    assert resp.status_code == 404
    resp = await client.get(f"{VENUE}/slots", params={"from": "03/03/2026"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"
    resp = await client.get(f"{VENUE}/slots", params={"from": TOMORROW.isoformat(), "to": TODAY.isoformat()})
    assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Slot configuration
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_get_slot_config(client, venue):
    resp = await client.get(f"{VENUE}/slot-config")
    assert resp.status_code == 200
    body = resp.json()
    assert body["startTime"] == "06:00"
    assert body["slotDurationMinutes"] == 60
    assert body["timezone"] == "Asia/Kathmandu"


@pytest.mark.asyncio
async def test_manager_updates_slot_config(client, venue, manager_headers):
    before = (await client.get(f"{VENUE}/slot-config")).json()["version"]
    resp = await client.put(
        f"{VENUE}/slot-config",
        json={"startTime": "07:00", "endTime": "10:00", "slotDurationMinutes": 90, "daysOfWeek": [5, 1]},
        headers=manager_headers,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["daysOfWeek"] == [1, 5]
    assert body["version"] == before + 1


@pytest.mark.asyncio
async def test_slot_config_validation(client, venue, manager_headers):
    resp = await client.put(f"{VENUE}/slot-config", json={"startTime": "07:00"}, headers=manager_headers)
    assert resp.status_code == 400
    resp = await client.put(
        f"{VENUE}/slot-config",
        json={"startTime": "10:00", "endTime": "07:00", "slotDurationMinutes": 60, "daysOfWeek": [1]},
        headers=manager_headers,
    )
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_slot_config_requires_venue_manager(client, venue, user_headers, admin_headers):
    payload = {"startTime": "07:00", "endTime": "10:00", "slotDurationMinutes": 60, "daysOfWeek": [1]}
    resp = await client.put(f"{VENUE}/slot-config", json=payload)
    assert resp.status_code == 401
    resp = await client.put(f"{VENUE}/slot-config", json=payload, headers=user_headers)
    assert resp.status_code == 403
    resp = await client.put(f"{VENUE}/slot-config", json=payload, headers=admin_headers)
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_invalid_token(client, venue):
    resp = await client.put(
        f"{VENUE}/slot-config", json={}, headers={"Authorization": "Bearer not-a-token"}
    )
    assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Manager slot actions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_block_and_unblock(client, venue, manager_headers):
    key = {"date": TOMORROW.isoformat(), "startTime": "09:00"}
    resp = await client.post(f"{VENUE}/slots/block", json={**key, "reason": "rain"}, headers=manager_headers)
    assert resp.status_code == 200
    assert resp.json() == {"changed": True}

    resp = await client.post(f"{VENUE}/slots/unblock", json=key, headers=manager_headers)
    assert resp.json() == {"changed": True}
    resp = await client.post(f"{VENUE}/slots/unblock", json=key, headers=manager_headers)
    assert resp.json() == {"changed": False}


@pytest.mark.asyncio
async def test_reserve_over_hold_conflicts(client, ledger, venue, manager_headers):
    await ledger.hold_slot(venue, TOMORROW, "09:00", "user-1")
    resp = await client.post(
        f"{VENUE}/slots/reserve",
        json={"date": TOMORROW.isoformat(), "startTime": "09:00", "note": "league"},
        headers=manager_headers,
    )
    assert resp.status_code == 409
    assert resp.json()["error"] == "slot_unavailable"


@pytest.mark.asyncio
async def test_slot_action_missing_key(client, venue, manager_headers):
    resp = await client.post(f"{VENUE}/slots/block", json={"date": TOMORROW.isoformat()}, headers=manager_headers)
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_physical_booking_and_venue_listing(client, venue, manager_headers):
    resp = await client.post(
        f"{VENUE}/physical-bookings",
        json={"date": TOMORROW.isoformat(), "startTime": "18:00", "customerName": "Hari", "customerPhone": "98000"},
        headers=manager_headers,
    )
    assert resp.status_code == 201
    booking = resp.json()
    assert booking["id"].startswith("physical_")
    assert booking["status"] == "confirmed"
    assert booking["bookingType"] == "physical"
    assert booking["userId"] is None

    resp = await client.get(f"{VENUE}/bookings", params={"date": TOMORROW.isoformat()}, headers=manager_headers)
    assert resp.status_code == 200
    assert [b["id"] for b in resp.json()] == [booking["id"]]

    resp = await client.get(f"{VENUE}/bookings", params={"status": "CONFIRMED"}, headers=manager_headers)
    assert [b["id"] for b in resp.json()] == [booking["id"]]
    resp = await client.get(f"{VENUE}/bookings", params={"status": "pending"}, headers=manager_headers)
    assert resp.json() == []
    resp = await client.get(f"{VENUE}/bookings", params={"status": "bogus"}, headers=manager_headers)
    assert resp.status_code == 400

    resp = await client.post(
        f"{VENUE}/slots/unbook", json={"date": TOMORROW.isoformat(), "startTime": "18:00"}, headers=manager_headers
    )
    assert resp.json() == {"changed": True}


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


async def _hold(client, headers, start_time="10:00"):
    return await client.post(
        f"{API}/bookings",
        json={"venueId": VENUE_ID, "date": TOMORROW.isoformat(), "startTime": start_time},
        headers=headers,
    )


@pytest.mark.asyncio
async def test_create_booking_holds_slot(client, venue, user_headers, other_user_headers):
    resp = await _hold(client, user_headers)
    assert resp.status_code == 201
    booking = resp.json()
    assert booking["status"] == "pending_payment"
    assert booking["amount"] == 1000.0
    assert booking["advanceAmount"] == 200.0
    assert booking["dueAmount"] == 800.0
    assert booking["holdExpiresAt"] is not None

    resp = await _hold(client, other_user_headers)
    assert resp.status_code == 409
    assert resp.json()["error"] == "slot_unavailable"

    slots = await client.get(f"{VENUE}/slots", params={"from": TOMORROW.isoformat(), "to": TOMORROW.isoformat()})
    assert _by_start(slots.json())["10:00"]["status"] == "held"


@pytest.mark.asyncio
async def test_create_booking_validation(client, venue, user_headers):
    resp = await client.post(f"{API}/bookings", json={"venueId": VENUE_ID}, headers=user_headers)
    assert resp.status_code == 400
    resp = await _hold(client, user_headers, start_time="10:15")
    assert resp.status_code == 400
    resp = await client.post(
        f"{API}/bookings", json={"venueId": VENUE_ID, "date": TOMORROW.isoformat(), "startTime": "10:00"}
    )
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_booking_visibility(client, venue, user_headers, other_user_headers, manager_headers):
    booking_id = (await _hold(client, user_headers)).json()["id"]

    assert (await client.get(f"{API}/bookings/{booking_id}", headers=user_headers)).status_code == 200
    assert (await client.get(f"{API}/bookings/{booking_id}", headers=manager_headers)).status_code == 200
    assert (await client.get(f"{API}/bookings/{booking_id}", headers=other_user_headers)).status_code == 403
    assert (await client.get(f"{API}/bookings/missing", headers=user_headers)).status_code == 404

    mine = await client.get(f"{API}/bookings", headers=user_headers)
    assert [b["id"] for b in mine.json()] == [booking_id]
    theirs = await client.get(f"{API}/bookings", headers=other_user_headers)
    assert theirs.json() == []


@pytest.mark.asyncio
async def test_cancel_booking(client, venue, user_headers):
    booking_id = (await _hold(client, user_headers)).json()["id"]

    resp = await client.post(f"{API}/bookings/{booking_id}/cancel", headers=user_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"

    resp = await client.post(f"{API}/bookings/{booking_id}/cancel", headers=user_headers)
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_transition"


@pytest.mark.asyncio
async def test_owner_cannot_cancel_close_to_start(client, venue, clock, user_headers, manager_headers):
    # 06:45 in Kathmandu, the 10:00 slot starts in 3h15m
    clock.current = clock.current.replace(day=3, hour=1, minute=0)
    booking_id = (await _hold(client, user_headers)).json()["id"]

    resp = await client.post(f"{API}/bookings/{booking_id}/cancel", headers=user_headers)
    assert resp.status_code == 409
    assert resp.json()["error"] == "cancellation_closed"

    resp = await client.post(f"{API}/bookings/{booking_id}/cancel", headers=manager_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"


@pytest.mark.asyncio
async def test_expire_booking(client, venue, clock, user_headers):
    booking_id = (await _hold(client, user_headers)).json()["id"]

    resp = await client.post(f"{API}/bookings/{booking_id}/expire", headers=user_headers)
    assert resp.status_code == 400

    clock.advance(minutes=5)
    resp = await client.post(f"{API}/bookings/{booking_id}/expire", headers=user_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "expired"

    resp = await client.get(f"{API}/bookings/{booking_id}", headers=user_headers)
    assert resp.json()["status"] == "expired"


@pytest.mark.asyncio
async def test_get_booking_expires_lapsed_hold(client, venue, clock, user_headers):
    booking_id = (await _hold(client, user_headers)).json()["id"]
    clock.advance(minutes=6)
    resp = await client.get(f"{API}/bookings/{booking_id}", headers=user_headers)
    assert resp.json()["status"] == "expired"
    assert resp.json()["expiredAt"] is not None


# ---------------------------------------------------------------------------
# Payment
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_payment_flow(client, venue, user_headers):
    booking_id = (await _hold(client, user_headers)).json()["id"]

    resp = await client.post(f"{API}/payment/initiate", json={"bookingId": booking_id})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["transactionUuid"].startswith(f"{booking_id}_")
    assert body["paymentParams"]["totalAmount"] == "200"
    assert body["paymentParams"]["signedFieldNames"] == "total_amount,transaction_uuid,product_code"
    assert body["signature"]

    resp = await client.post(
        f"{API}/payment/verify",
        json={"transactionUuid": body["transactionUuid"], "productCode": "EPAYTEST", "totalAmount": 200},
    )
    assert resp.status_code == 200
    verified = resp.json()
    assert verified["verified"] is True
    assert verified["bookingConfirmed"] is True
    assert verified["bookingId"] == booking_id
    assert "alreadyConfirmed" not in verified

    resp = await client.post(
        f"{API}/payment/verify",
        json={"transactionUuid": body["transactionUuid"], "productCode": "EPAYTEST"},
    )
    assert resp.json()["alreadyConfirmed"] is True

    booking = await client.get(f"{API}/bookings/{booking_id}", headers=user_headers)
    assert booking.json()["status"] == "confirmed"
    assert booking.json()["paymentRefId"] == "000AWEO"


@pytest.mark.asyncio
async def test_initiate_errors(client, venue):
    resp = await client.post(f"{API}/payment/initiate", json={})
    assert resp.status_code == 400
    resp = await client.post(f"{API}/payment/initiate", json={"bookingId": "missing"})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_initiate_without_gateway_secret(client, venue, user_headers):
    booking_id = (await _hold(client, user_headers)).json()["id"]
    app.dependency_overrides[get_gateway] = lambda: EsewaGateway(secret="")
    resp = await client.post(f"{API}/payment/initiate", json={"bookingId": booking_id})
    assert resp.status_code == 500
    assert resp.json()["error"] == "gateway_not_configured"


@pytest.mark.asyncio
async def test_verify_errors(client, venue, esewa_stub):
    resp = await client.post(f"{API}/payment/verify", json={"productCode": "EPAYTEST"})
    assert resp.status_code == 400

    esewa_stub.fail_status = 502
    resp = await client.post(f"{API}/payment/verify", json={"transactionUuid": "t_1", "productCode": "EPAYTEST"})
    assert resp.status_code == 400
    body = resp.json()
    assert body["verified"] is False
    assert body["details"] == "gateway unavailable"


@pytest.mark.asyncio
async def test_verify_unknown_transaction(client, venue, esewa_stub):
    esewa_stub.statuses["nobody"] = "NOT_FOUND"
    resp = await client.post(f"{API}/payment/verify", json={"transactionUuid": "nobody", "productCode": "EPAYTEST"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["verified"] is False
    assert body["status"] == "NOT_FOUND"
    assert body["bookingStatus"] == "not_found"


@pytest.mark.asyncio
async def test_compute_amount(client, ledger, venue):
    await ledger.reserve_slot(venue, TOMORROW, "11:00", reserved_by="manager-1")
    resp = await client.post(
        f"{API}/payment/compute-amount",
        json={"venueId": VENUE_ID, "date": TOMORROW.isoformat(), "startTime": "10:00", "slots": 2},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["computed"]["totalAmount"] == 2000.0
    assert body["computed"]["advanceAmount"] == 400.0
    assert body["available"] is False
    assert body["conflicts"] == ["reserved"]
    assert body["slotDuration"] == 60

    resp = await client.post(f"{API}/payment/compute-amount", json={"booking": {"amount": "1,200"}})
    assert resp.json()["computed"]["advanceAmount"] == 240.0
    assert "available" not in resp.json()

    resp = await client.post(f"{API}/payment/compute-amount", json={"venueId": VENUE_ID})
    assert resp.status_code == 400
    resp = await client.post(
        f"{API}/payment/compute-amount",
        json={"venueId": "nowhere", "date": TOMORROW.isoformat(), "startTime": "10:00"},
    )
    assert resp.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "preview",
    [
        {"advancePercentage": "twenty"},
        {"slotDuration": "1h"},
        {"pricePerHour": 1000, "slots": "two"},
        {"totalAmount": "NaN"},
        {"totalAmount": "Infinity"},
        {"pricePerHour": "-inf"},
        {"advancePercentage": "12.5", "amount": 100},
    ],
)
async def test_compute_amount_rejects_malformed_preview(client, preview):
    resp = await client.post(f"{API}/payment/compute-amount", json={"booking": preview})
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_generate_signature(client):
    resp = await client.post(
        f"{API}/payment/generate-signature",
        json={"totalAmount": 100, "transactionUuid": "11-201-13", "productCode": "EPAYTEST"},
    )
    assert resp.status_code == 200
    assert resp.json()["signature"] == "4Ov7pCI1zIOdwtV2BRMUNjz1upIlT/COTxfLhWvVurE="
    assert resp.json()["signedFieldNames"] == "total_amount,transaction_uuid,product_code"

    resp = await client.post(f"{API}/payment/generate-signature", json={"totalAmount": 100})
    assert resp.status_code == 400


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sweep_requires_admin(client, venue, clock, user_headers, admin_headers):
    await _hold(client, user_headers)
    clock.advance(minutes=10)

    resp = await client.post(f"{API}/maintenance/sweep", headers=user_headers)
    assert resp.status_code == 403

    resp = await client.post(f"{API}/maintenance/sweep", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json() == {"venues": 1, "holdsRemoved": 1, "bookingsExpired": 0}


@pytest.mark.asyncio
async def test_reconcile_as_admin(client, venue, admin_headers):
    resp = await client.post(f"{API}/maintenance/reconcile", headers=admin_headers)
    assert resp.status_code == 200
    assert resp.json() == {"checked": 0, "confirmed": 0, "failed": 0, "unchanged": 0, "errors": 0}
