"""Razorpay adapter — webhook verification/parsing and REST client.

Contract:
- Signature is HMAC-SHA256 hex digest of the raw body, sent in
  X-Razorpay-Signature. Compared with hmac.compare_digest() (constant-time)
- Missing secret or header -> verification always fails (fail-closed)
- parse() never invents fields: absent ids stay absent so ingestion can
  classify the event as malformed
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from datetime import datetime
from typing import Any, Mapping

import httpx

from recurship.gateways.http import send

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-razorpay-signature"


def verify_signature(body: bytes, signature: str | None, secret: str) -> bool:
    """Verify a Razorpay webhook signature.

    Args:
        body: Raw request body bytes
        signature: Value of X-Razorpay-Signature header
        secret: Webhook secret configured in the Razorpay dashboard

    Returns:
        True if signature is valid
    """
    if not secret:
        logger.warning("Razorpay webhook secret not set — rejecting webhook")
        return False
    if not signature:
        return False

    computed = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed, signature)


def _entity(envelope: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    payload = envelope.get("payload")
    if not isinstance(payload, Mapping):
        return {}
    wrapper = payload.get(name)
    if not isinstance(wrapper, Mapping):
        return {}
    entity = wrapper.get("entity")
    return entity if isinstance(entity, Mapping) else {}


def parse_webhook(envelope: Mapping[str, Any]) -> dict[str, Any]:
    """Map a Razorpay event envelope to a provider-agnostic raw event.

    ``subscription.charged`` carries the subscription entity and the payment
    entity. The payment id is the charge id.
    """
    raw: dict[str, Any] = {}
    event_type = envelope.get("event")
    if event_type is not None:
        raw["event_type"] = event_type

    subscription = _entity(envelope, "subscription")
    payment = _entity(envelope, "payment")

    if "id" in subscription:
        raw["subscription_id"] = subscription["id"]
    if "id" in payment:
        raw["charge_id"] = payment["id"]

    customer_id = subscription.get("customer_id") or payment.get("customer_id")
    if customer_id:
        raw["customer_id"] = customer_id

    observed_at = payment.get("created_at") or envelope.get("created_at")
    if observed_at is not None:
        raw["observed_at"] = observed_at
    return raw


class RazorpayWebhookSource:
    """PaymentWebhookSource for Razorpay."""

    name = "razorpay"

    def __init__(self, webhook_secret: str) -> None:
        self._secret = webhook_secret

    def verify(self, body: bytes, headers: Mapping[str, str]) -> bool:
        return verify_signature(body, headers.get(SIGNATURE_HEADER), self._secret)

    def parse(self, envelope: Mapping[str, Any]) -> dict[str, Any]:
        return parse_webhook(envelope)


class RazorpayClient:
    """PaymentGateway backed by the Razorpay REST API (basic auth)."""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        *,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10.0,
        total_count: int = 12,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._total_count = total_count
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
            transport=transport,
        )

    async def create_recurring_charge(
        self, plan_id: str, customer_ref: str, quantity: int = 1
    ) -> str:
        body = {
            "plan_id": plan_id,
            "customer_notify": 1,
            "total_count": self._total_count,
            "quantity": quantity,
            "start_at": int(time.time()) + 60,
            "notes": {"customer_ref": customer_ref},
        }
        data = await send(self._client, "razorpay", "POST", "/subscriptions", json=body)
        logger.info("Razorpay subscription created: %s (plan=%s)", data.get("id"), plan_id)
        return str(data["id"])

    async def charge_lookup(
        self, subscription_id: str, since: datetime, until: datetime
    ) -> list[str]:
        data = await send(
            self._client,
            "razorpay",
            "GET",
            "/invoices",
            params={"subscription_id": subscription_id},
        )
        lo, hi = since.timestamp(), until.timestamp()
        charges = []
        for invoice in data.get("items", []):
            if invoice.get("status") != "paid":
                continue
            paid_at = invoice.get("paid_at")
            if paid_at is None or not (lo <= float(paid_at) < hi):
                continue
            charges.append(str(invoice.get("payment_id") or invoice.get("id")))
        return charges

    async def aclose(self) -> None:
        await self._client.aclose()
