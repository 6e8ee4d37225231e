"""Storage contracts the reconciliation core depends on.

The core never talks to a database directly. It needs:

- point lookup of a subscription, and a scan of active subscriptions
- an atomic claim on a fulfillment key (insert-if-absent)
- an atomic seen-set for provider charge ids

Implementations must make ``FulfillmentLedger.claim`` and
``ChargeEventLog.record`` single atomic operations. Read-then-write from
the caller side is never sufficient.
"""

from __future__ import annotations

from datetime import datetime
from typing import AsyncIterator, Protocol, runtime_checkable

from recurship.models import ChargeEvent, LedgerEntry, Subscription


@runtime_checkable
class SubscriptionStore(Protocol):
    """Durable record of subscriptions."""

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        ...

    def list_active_subscriptions(self) -> AsyncIterator[Subscription]:
        """Yield every subscription with ``active=True``."""
        ...

    async def save_subscription(self, subscription: Subscription) -> None:
        ...

    async def set_active(self, subscription_id: str, active: bool) -> bool:
        """Flip the activation flag. Returns False if the id is unknown."""
        ...

    async def mark_charged(self, subscription_id: str, billing_cycle: str) -> None:
        """Advance ``last_charged_cycle`` after an accepted charge."""
        ...


@runtime_checkable
class FulfillmentLedger(Protocol):
    """Single source of truth for "has this cycle been fulfilled"."""

    async def get(self, fulfillment_key: str) -> LedgerEntry | None:
        ...

    async def claim(
        self,
        fulfillment_key: str,
        subscription_id: str,
        billing_cycle: str,
        *,
        lease_expired_before: datetime,
    ) -> tuple[bool, LedgerEntry]:
        """Atomically take ownership of a fulfillment key.

        Succeeds (``True``) when no entry exists, when the entry is FAILED
        and retryable, or when it is PENDING but last touched before
        ``lease_expired_before``. Otherwise returns ``False`` with the
        existing entry unchanged.
        """
        ...

    async def mark_created(self, fulfillment_key: str, gateway_order_id: str) -> LedgerEntry:
        ...

    async def mark_failed(
        self, fulfillment_key: str, reason: str, *, retryable: bool
    ) -> LedgerEntry:
        ...

    async def reset(self, fulfillment_key: str) -> bool:
        """Make a non-retryable FAILED entry retryable again."""
        ...


@runtime_checkable
class ChargeEventLog(Protocol):
    """Seen-set of provider charge ids."""

    async def record(self, event: ChargeEvent) -> bool:
        """Insert-if-absent. True when the charge id was not seen before."""
        ...

    async def has_seen(self, charge_id: str) -> bool:
        ...
