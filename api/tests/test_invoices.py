"""Invoice check-in tokens: encryption format and the manager verify endpoint."""

import base64
import hashlib
import json
from datetime import timedelta

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from slotbook.core.config import settings
from slotbook.core.errors import InvoiceNotConfigured, ValidationError
from slotbook.services.invoices import decode_check_in_token, encode_check_in_token
from tests.conftest import FROZEN_NOW, TOMORROW, USER_ID

API = "/api/v1"
QR_SECRET = "test-invoice-secret"


@pytest.fixture(autouse=True)
def qr_secret(monkeypatch):
    monkeypatch.setattr(settings, "invoice_qr_secret", QR_SECRET)


def _seal(payload: dict, secret: str = QR_SECRET, nonce: bytes = b"\x00" * 12) -> str:
    """Build a token by hand in the nonce || tag || ciphertext layout."""
    sealed = AESGCM(hashlib.sha256(secret.encode()).digest()).encrypt(nonce, json.dumps(payload).encode(), None)
    return base64.b64encode(nonce + sealed[-16:] + sealed[:-16]).decode()


# ---------------------------------------------------------------------------
# Token format
# ---------------------------------------------------------------------------


def test_token_carries_booking_and_issue_time():
    token = encode_check_in_token("booking_1", FROZEN_NOW)
    payload = decode_check_in_token(token)
    assert payload.booking_id == "booking_1"
    assert payload.issued_at == FROZEN_NOW


def test_token_layout_is_nonce_tag_ciphertext():
    ms = int(FROZEN_NOW.timestamp() * 1000)
    token = _seal({"b": "booking_9", "t": ms})
    assert decode_check_in_token(token).booking_id == "booking_9"

    raw = base64.b64decode(encode_check_in_token("booking_9", FROZEN_NOW))
    plaintext = json.dumps({"b": "booking_9", "t": ms}, separators=(",", ":")).encode()
    assert len(raw) == 12 + 16 + len(plaintext)


def test_tokens_use_fresh_nonces():
    assert encode_check_in_token("booking_1", FROZEN_NOW) != encode_check_in_token("booking_1", FROZEN_NOW)


def test_data_url_prefix_is_accepted():
    token = encode_check_in_token("booking_1", FROZEN_NOW)
    assert decode_check_in_token(f"data:text/plain;base64,{token}").booking_id == "booking_1"


def test_token_from_another_secret_is_rejected():
    token = encode_check_in_token("booking_1", FROZEN_NOW, secret="someone-else")
    with pytest.raises(ValidationError):
        decode_check_in_token(token)


def test_tampered_token_is_rejected():
    raw = bytearray(base64.b64decode(encode_check_in_token("booking_1", FROZEN_NOW)))
    raw[-1] ^= 0x01
    with pytest.raises(ValidationError):
        decode_check_in_token(base64.b64encode(bytes(raw)).decode())


@pytest.mark.parametrize(
    "token",
    [
        None,
        "",
        "not base64 at all!",
        base64.b64encode(b"short").decode(),
        base64.b64encode(json.dumps({"b": "booking_1"}).encode()).decode(),  # unsigned payload
    ],
)
def test_malformed_tokens_are_rejected(token):
    with pytest.raises(ValidationError):
        decode_check_in_token(token)


@pytest.mark.parametrize("payload", [{"t": 1}, {"b": ""}, {"b": 42}, ["booking_1"]])
def test_payload_without_booking_id_is_rejected(payload):
    with pytest.raises(ValidationError):
        decode_check_in_token(_seal(payload))


def test_payload_without_timestamp_is_never_stale():
    payload = decode_check_in_token(_seal({"b": "booking_1"}))
    assert payload.issued_at is None
    assert payload.is_stale(FROZEN_NOW + timedelta(days=30), timedelta(hours=24)) is False


def test_staleness():
    payload = decode_check_in_token(encode_check_in_token("booking_1", FROZEN_NOW))
    assert payload.is_stale(FROZEN_NOW + timedelta(hours=23), timedelta(hours=24)) is False
    assert payload.is_stale(FROZEN_NOW + timedelta(hours=25), timedelta(hours=24)) is True


def test_missing_secret(monkeypatch):
    monkeypatch.setattr(settings, "invoice_qr_secret", "")
    with pytest.raises(InvoiceNotConfigured):
        encode_check_in_token("booking_1", FROZEN_NOW)
    with pytest.raises(InvoiceNotConfigured):
        decode_check_in_token("anything")


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


@pytest.fixture
async def booking(ledger, venue):
    held = await ledger.hold_slot(venue, TOMORROW, "10:00", USER_ID)
    await ledger.confirm_booking(held.id, ref_id="000AWEO")
    return held.id


async def _token(client, booking_id, headers) -> str:
    resp = await client.get(f"{API}/bookings/{booking_id}/check-in-token", headers=headers)
    assert resp.status_code == 200
    return resp.json()["token"]


@pytest.mark.asyncio
async def test_owner_gets_token_and_manager_verifies_it(client, booking, user_headers, manager_headers):
    resp = await client.get(f"{API}/bookings/{booking}/check-in-token", headers=user_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["bookingId"] == booking
    assert body["issuedAt"].startswith("2026-03-02T03:00:00")

    resp = await client.post(f"{API}/bookings/verify-qr", json={"qr": body["token"]}, headers=manager_headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["stale"] is False
    assert body["booking"]["id"] == booking
    assert body["booking"]["status"] == "confirmed"


@pytest.mark.asyncio
async def test_admin_can_verify(client, booking, user_headers, admin_headers):
    token = await _token(client, booking, user_headers)
    resp = await client.post(f"{API}/bookings/verify-qr", json={"qr": token}, headers=admin_headers)
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_customer_cannot_verify(client, booking, user_headers, other_user_headers):
    token = await _token(client, booking, user_headers)
    for headers in (user_headers, other_user_headers):
        resp = await client.post(f"{API}/bookings/verify-qr", json={"qr": token}, headers=headers)
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"


@pytest.mark.asyncio
async def test_old_token_is_reported_stale(client, booking, clock, user_headers, manager_headers):
    token = await _token(client, booking, user_headers)
    clock.advance(hours=25)
    resp = await client.post(f"{API}/bookings/verify-qr", json={"qr": token}, headers=manager_headers)
    assert resp.status_code == 200
    assert resp.json()["stale"] is True


@pytest.mark.asyncio
async def test_verify_qr_errors(client, venue, manager_headers):
    resp = await client.post(f"{API}/bookings/verify-qr", json={}, headers=manager_headers)
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"

    resp = await client.post(f"{API}/bookings/verify-qr", json={"qr": "garbage"}, headers=manager_headers)
    assert resp.status_code == 400

    token = encode_check_in_token("booking_missing", FROZEN_NOW)
    resp = await client.post(f"{API}/bookings/verify-qr", json={"qr": token}, headers=manager_headers)
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_check_in_token_visibility(client, booking, other_user_headers, manager_headers):
    resp = await client.get(f"{API}/bookings/{booking}/check-in-token", headers=other_user_headers)
    assert resp.status_code == 403
    resp = await client.get(f"{API}/bookings/{booking}/check-in-token", headers=manager_headers)
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_check_in_token_without_secret(client, booking, user_headers, monkeypatch):
    monkeypatch.setattr(settings, "invoice_qr_secret", "")
    resp = await client.get(f"{API}/bookings/{booking}/check-in-token", headers=user_headers)
    assert resp.status_code == 500
    assert resp.json()["error"] == "invoice_not_configured"
