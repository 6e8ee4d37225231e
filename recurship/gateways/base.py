"""Provider capability interfaces.

The core only ever sees these protocols. Provider request/response shapes
live in the adapters next to this module.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Protocol, runtime_checkable

from recurship.models import FulfillmentOrder


@runtime_checkable
class PaymentWebhookSource(Protocol):
    """Inbound webhook boundary for a payment provider."""

    name: str

    def verify(self, body: bytes, headers: Mapping[str, str]) -> bool:
        """Check the provider signature. Headers have lowercase keys."""
        ...

    def parse(self, envelope: Mapping[str, Any]) -> dict[str, Any]:
        """Map a provider envelope to a provider-agnostic raw event.

        The result carries ``event_type`` and, for charge events,
        ``subscription_id``, ``charge_id``, ``customer_id`` and
        ``observed_at``. Missing fields are left out, not invented.
        """
        ...


@runtime_checkable
class PaymentGateway(Protocol):
    """Outbound payment provider capability."""

    async def create_recurring_charge(
        self, plan_id: str, customer_ref: str, quantity: int = 1
    ) -> str:
        """Create a provider subscription and return its id."""
        ...

    async def charge_lookup(
        self, subscription_id: str, since: datetime, until: datetime
    ) -> list[str]:
        """Return ids of paid charges for the subscription in ``[since, until)``."""
        ...


@runtime_checkable
class ShippingGateway(Protocol):
    """Outbound fulfillment provider capability.

    ``create_order`` must send ``order.fulfillment_key`` as the client
    order reference so a provider that dedups by it can short-circuit
    retries. Raises ``TransientGatewayFailure`` or ``PermanentGatewayFailure``.
    """

    async def create_order(self, order: FulfillmentOrder) -> str:
        ...
