"""Invoice check-in tokens.

A booking's invoice carries a QR code with a small encrypted payload,
``{"b": booking_id, "t": issued_at_ms}``. The venue manager scans it at the
door and the verify endpoint decrypts it to find the booking.

Token layout: base64(nonce || tag || ciphertext), AES-256-GCM with a key
derived as SHA-256 of ``invoice_qr_secret``.
"""

import base64
import binascii
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from slotbook.core.config import settings
from slotbook.core.errors import InvoiceNotConfigured, ValidationError

logger = logging.getLogger(__name__)

_NONCE_LEN = 12
_TAG_LEN = 16


@dataclass(frozen=True)
class CheckInPayload:
    booking_id: str
    issued_at: datetime | None

    def is_stale(self, now: datetime, max_age: timedelta) -> bool:
        return self.issued_at is not None and abs(now - self.issued_at) > max_age


def _cipher(secret: str | None) -> AESGCM:
    secret = settings.invoice_qr_secret if secret is None else secret
    if not secret:
        raise InvoiceNotConfigured("Invoice QR secret not configured")
    return AESGCM(hashlib.sha256(secret.encode()).digest())


def encode_check_in_token(booking_id: str, now: datetime, secret: str | None = None) -> str:
    payload = json.dumps({"b": booking_id, "t": int(now.timestamp() * 1000)}, separators=(",", ":"))
    nonce = os.urandom(_NONCE_LEN)
    sealed = _cipher(secret).encrypt(nonce, payload.encode(), None)
    # cryptography appends the tag; the token keeps it in front of the ciphertext
    ciphertext, tag = sealed[:-_TAG_LEN], sealed[-_TAG_LEN:]
    return base64.b64encode(nonce + tag + ciphertext).decode()


def decode_check_in_token(token: str | None, secret: str | None = None) -> CheckInPayload:
    """Decrypt a scanned token. Accepts a bare token or a ``data:...;base64,`` URL."""
    if not token:
        raise ValidationError("Missing qr payload")
    cipher = _cipher(secret)

    raw = token.strip()
    if raw.startswith("data:") and "," in raw:
        raw = raw.split(",", 1)[1]
    try:
        data = base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Failed to decrypt QR payload") from None
    if len(data) < _NONCE_LEN + _TAG_LEN:
        raise ValidationError("Failed to decrypt QR payload")

    nonce, tag, ciphertext = data[:_NONCE_LEN], data[_NONCE_LEN : _NONCE_LEN + _TAG_LEN], data[_NONCE_LEN + _TAG_LEN :]
    try:
        payload = json.loads(cipher.decrypt(nonce, ciphertext + tag, None))
    except InvalidTag:
        logger.warning("QR payload failed authentication")
        raise ValidationError("Failed to decrypt QR payload") from None
    except ValueError:
        raise ValidationError("Failed to parse QR payload") from None

    booking_id = payload.get("b") if isinstance(payload, dict) else None
    if not booking_id or not isinstance(booking_id, str):
        raise ValidationError("Invalid QR payload (missing booking id)")

    issued_at = None
    ts = payload.get("t")
    if isinstance(ts, int | float) and not isinstance(ts, bool) and ts > 0:
        try:
            issued_at = datetime.fromtimestamp(ts / 1000, tz=UTC)
        except (OverflowError, OSError, ValueError):
            raise ValidationError("Invalid QR payload timestamp") from None
    return CheckInPayload(booking_id=booking_id, issued_at=issued_at)
