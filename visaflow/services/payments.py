"""Payment gateway client.

Two backends:
- ``demo``: deterministic, no external calls. Intent and refund ids are derived
  from the idempotency key, so retrying a charge yields the same intent.
- ``http``: JSON API over httpx. Every call carries an ``Idempotency-Key``
  header; the gateway is expected to return the original result for a
  repeated key.

Set PAYMENT_BACKEND=http and configure PAYMENT_GATEWAY_* for production.
"""

import hashlib
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

import httpx

from visaflow.config import settings
from visaflow.errors import PaymentGatewayError

logger = logging.getLogger(__name__)


@dataclass
class GatewayCharge:
    intent_id: str
    amount: Decimal
    currency: str
    status: str


@dataclass
class GatewayRefund:
    refund_id: str
    intent_id: str
    amount: Decimal
    status: str


class PaymentGateway(Protocol):
    async def charge(
        self, amount: Decimal, currency: str, payment_method: str, idempotency_key: str,
    ) -> GatewayCharge: ...

    async def refund(
        self, intent_id: str, amount: Decimal, idempotency_key: str,
    ) -> GatewayRefund: ...


def _demo_id(prefix: str, key: str) -> str:
    return f"{prefix}_demo_{hashlib.sha256(key.encode()).hexdigest()[:24]}"


class DemoPaymentGateway:
    """Development gateway: always succeeds, never leaves the process."""

    async def charge(
        self, amount: Decimal, currency: str, payment_method: str, idempotency_key: str,
    ) -> GatewayCharge:
        intent_id = _demo_id("pi", idempotency_key)
        logger.info("Demo charge %s %s via %s -> %s", amount, currency, payment_method, intent_id)
        return GatewayCharge(intent_id=intent_id, amount=amount, currency=currency, status="succeeded")

    async def refund(
        self, intent_id: str, amount: Decimal, idempotency_key: str,
    ) -> GatewayRefund:
        refund_id = _demo_id("re", idempotency_key)
        logger.info("Demo refund %s on %s -> %s", amount, intent_id, refund_id)
        return GatewayRefund(refund_id=refund_id, intent_id=intent_id, amount=amount, status="succeeded")


class HttpPaymentGateway:
    def __init__(self, base_url: str, api_key: str, timeout: int) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    async def _post(self, path: str, payload: dict, idempotency_key: str) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                resp = await client.post(
                    f"{self.base_url}{path}",
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Idempotency-Key": idempotency_key,
                    },
                    json=payload,
                )
            except httpx.TimeoutException:
                logger.error("Payment gateway timed out on %s", path)
                raise PaymentGatewayError("Payment gateway timed out")
            except httpx.RequestError as e:
                logger.error("Payment gateway request failed: %s", e)
                raise PaymentGatewayError("Failed to reach payment gateway")

        if resp.status_code not in (200, 201):
            logger.error(
                "Payment gateway %s returned %d: %s", path, resp.status_code, resp.text[:500]
            )
            raise PaymentGatewayError(
                f"Payment gateway rejected the request (status {resp.status_code})"
            )
        return resp.json()

    async def charge(
        self, amount: Decimal, currency: str, payment_method: str, idempotency_key: str,
    ) -> GatewayCharge:
        data = await self._post(
            "/charges",
            {"amount": str(amount), "currency": currency, "payment_method": payment_method},
            idempotency_key,
        )
        return GatewayCharge(
            intent_id=data["id"],
            amount=Decimal(str(data.get("amount", amount))),
            currency=data.get("currency", currency),
            status=data.get("status", "succeeded"),
        )

    async def refund(
        self, intent_id: str, amount: Decimal, idempotency_key: str,
    ) -> GatewayRefund:
        data = await self._post(
            "/refunds",
            {"payment_intent": intent_id, "amount": str(amount)},
            idempotency_key,
        )
        return GatewayRefund(
            refund_id=data["id"],
            intent_id=intent_id,
            amount=Decimal(str(data.get("amount", amount))),
            status=data.get("status", "succeeded"),
        )


def get_payment_gateway() -> PaymentGateway:
    if settings.payment_backend == "http":
        return HttpPaymentGateway(
            settings.payment_gateway_url,
            settings.payment_gateway_api_key,
            settings.payment_timeout_seconds,
        )
    return DemoPaymentGateway()
