"""eSewa ePay v2 integration.

Signing: HMAC-SHA256 over a canonical field string, Base64-encoded. The
payment form signs ``total_amount,transaction_uuid,product_code`` in that
order; the status check signs ``transaction_uuid`` alone.
"""

import base64
import enum
import hashlib
import hmac
import logging

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from slotbook.core.config import settings
from slotbook.core.errors import GatewayNotConfigured, GatewayUnavailable

logger = logging.getLogger(__name__)

SIGNED_FIELD_NAMES = "total_amount,transaction_uuid,product_code"


class GatewayStatus(enum.StrEnum):
    COMPLETE = "COMPLETE"
    PENDING = "PENDING"
    INITIATED = "INITIATED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    NOT_FOUND = "NOT_FOUND"
    FULL_REFUND = "FULL_REFUND"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    AMBIGUOUS = "AMBIGUOUS"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: str | None) -> "GatewayStatus":
        if not value or not isinstance(value, str):
            return cls.UNKNOWN
        key = value.strip().upper().replace(" ", "_")
        if key == "CANCELLED":
            key = "CANCELED"
        try:
            return cls(key)
        except ValueError:
            return cls.UNKNOWN

    @property
    def is_success(self) -> bool:
        return self is GatewayStatus.COMPLETE

    @property
    def is_failure(self) -> bool:
        return self in (GatewayStatus.FAILED, GatewayStatus.CANCELED)


class GatewayStatusResponse(BaseModel):
    """Body of the transaction status check."""

    model_config = ConfigDict(extra="allow")

    status: GatewayStatus = GatewayStatus.UNKNOWN
    raw_status: str | None = None
    ref_id: str | None = None
    transaction_uuid: str | None = None
    total_amount: str | None = None
    product_code: str | None = None

    @field_validator("status", mode="before")
    @classmethod
    def _parse_status(cls, value):
        return GatewayStatus.parse(value)

    @field_validator("total_amount", "ref_id", mode="before")
    @classmethod
    def _stringify(cls, value):
        return None if value is None else str(value)


def sign(message: str, secret: str | None = None) -> str:
    secret = settings.esewa_secret_key if secret is None else secret
    if not secret:
        raise GatewayNotConfigured("Payment gateway not configured")
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def payment_message(total_amount: str, transaction_uuid: str, product_code: str) -> str:
    return f"total_amount={total_amount},transaction_uuid={transaction_uuid},product_code={product_code}"


def verification_message(transaction_uuid: str) -> str:
    return f"transaction_uuid={transaction_uuid}"


def payment_form(
    total_amount: str,
    transaction_uuid: str,
    product_code: str | None = None,
    secret: str | None = None,
) -> dict:
    """Fields the client posts to the eSewa form URL."""
    product_code = product_code or settings.esewa_product_code
    signature = sign(payment_message(total_amount, transaction_uuid, product_code), secret)
    return {
        "amount": total_amount,
        "tax_amount": "0",
        "product_service_charge": "0",
        "product_delivery_charge": "0",
        "total_amount": total_amount,
        "transaction_uuid": transaction_uuid,
        "product_code": product_code,
        "success_url": settings.success_url,
        "failure_url": settings.failure_url,
        "signed_field_names": SIGNED_FIELD_NAMES,
        "signature": signature,
    }


class EsewaGateway:
    """Status-check client. One GET per call, no retries."""

    def __init__(
        self,
        verify_url: str | None = None,
        secret: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.verify_url = verify_url or settings.esewa_verify_url
        self.secret = settings.esewa_secret_key if secret is None else secret
        self.timeout = timeout or settings.gateway_timeout_seconds
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.secret)

    async def check_status(self, transaction_uuid: str, product_code: str, total_amount: str) -> GatewayStatusResponse:
        signature = sign(verification_message(transaction_uuid), self.secret)
        params = {
            "product_code": product_code,
            "total_amount": total_amount,
            "transaction_uuid": transaction_uuid,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.get(
                    self.verify_url,
                    params=params,
                    headers={"Content-Type": "application/json", "X-Signature": signature},
                )
        except httpx.HTTPError as exc:
            logger.exception("eSewa status check failed for %s", transaction_uuid)
            raise GatewayUnavailable("Payment verification failed", details=str(exc)) from exc

        if resp.status_code != 200:
            logger.error("eSewa status check returned %s for %s: %s", resp.status_code, transaction_uuid, resp.text)
            raise GatewayUnavailable("Payment verification failed", details=resp.text)

        try:
            data = resp.json()
        except ValueError as exc:
            raise GatewayUnavailable("Payment verification failed", details="Invalid gateway response") from exc
        if not isinstance(data, dict):
            logger.error("eSewa status check for %s returned a non-object body: %s", transaction_uuid, resp.text)
            raise GatewayUnavailable("Payment verification failed", details="Invalid gateway response")

        try:
            result = GatewayStatusResponse.model_validate({**data, "raw_status": data.get("status")})
        except ValidationError as exc:
            logger.error("eSewa status check for %s returned an unexpected body: %s", transaction_uuid, resp.text)
            raise GatewayUnavailable("Payment verification failed", details="Invalid gateway response") from exc
        logger.info("eSewa status for %s: %s (ref %s)", transaction_uuid, result.status.value, result.ref_id)
        return result
