"""Bearer token handling.

Tokens are issued by the identity provider; this service only verifies them
and reads the subject (user id) and role. ``create_access_token`` is kept for
scripts and tests that need a valid token.
"""

from datetime import UTC, datetime, timedelta

from jose import JWTError, jwt

from slotbook.core.config import settings

ROLE_USER = "user"
ROLE_MANAGER = "manager"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_MANAGER, ROLE_ADMIN)


def create_access_token(subject: str, role: str = ROLE_USER, extra: dict | None = None) -> str:
    expire = datetime.now(UTC) + timedelta(minutes=settings.access_token_expire_minutes)
    payload = {"sub": subject, "exp": expire, "type": "access", "role": role}
    if extra:
        payload.update(extra)
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Raises JWTError on failure."""
    payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    if payload.get("role", ROLE_USER) not in ROLES:
        raise JWTError("Unknown role")
    return payload
