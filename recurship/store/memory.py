"""In-memory store implementations.

Used for local development and tests. A single ``asyncio.Lock`` makes each
ledger and charge-log operation atomic within one event loop, which is the
same guarantee the Postgres implementation gets from single statements.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import replace
from datetime import datetime, timezone
from typing import AsyncIterator

from recurship.models import ChargeEvent, LedgerEntry, LedgerStatus, Subscription


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemorySubscriptionStore:
    def __init__(self, subscriptions: list[Subscription] | None = None) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        for sub in subscriptions or []:
            self._subscriptions[sub.subscription_id] = sub

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        sub = self._subscriptions.get(subscription_id)
        return copy.deepcopy(sub) if sub is not None else None

    async def list_active_subscriptions(self) -> AsyncIterator[Subscription]:
        for sub in list(self._subscriptions.values()):
            if sub.active:
                yield copy.deepcopy(sub)

    async def save_subscription(self, subscription: Subscription) -> None:
        self._subscriptions[subscription.subscription_id] = copy.deepcopy(subscription)

    async def set_active(self, subscription_id: str, active: bool) -> bool:
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            return False
        sub.active = active
        return True

    async def mark_charged(self, subscription_id: str, billing_cycle: str) -> None:
        sub = self._subscriptions.get(subscription_id)
        if sub is not None and (
            sub.last_charged_cycle is None or sub.last_charged_cycle < billing_cycle
        ):
            sub.last_charged_cycle = billing_cycle


class InMemoryFulfillmentLedger:
    def __init__(self) -> None:
        self._entries: dict[str, LedgerEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, fulfillment_key: str) -> LedgerEntry | None:
        entry = self._entries.get(fulfillment_key)
        return replace(entry) if entry is not None else None

    async def claim(
        self,
        fulfillment_key: str,
        subscription_id: str,
        billing_cycle: str,
        *,
        lease_expired_before: datetime,
    ) -> tuple[bool, LedgerEntry]:
        async with self._lock:
            entry = self._entries.get(fulfillment_key)
            if entry is None:
                entry = LedgerEntry(
                    fulfillment_key=fulfillment_key,
                    subscription_id=subscription_id,
                    billing_cycle=billing_cycle,
                    attempts=1,
                    updated_at=_now(),
                )
                self._entries[fulfillment_key] = entry
                return True, replace(entry)

            reclaimable = (
                entry.status == LedgerStatus.FAILED and entry.retryable
            ) or (
                entry.status == LedgerStatus.PENDING
                and entry.updated_at < lease_expired_before
            )
            if not reclaimable:
                return False, replace(entry)

            entry.status = LedgerStatus.PENDING
            entry.failure_reason = None
            entry.attempts += 1
            entry.updated_at = _now()
            return True, replace(entry)

    async def mark_created(self, fulfillment_key: str, gateway_order_id: str) -> LedgerEntry:
        async with self._lock:
            entry = self._entries[fulfillment_key]
            if entry.status != LedgerStatus.CREATED:
                entry.status = LedgerStatus.CREATED
                entry.gateway_order_id = gateway_order_id
                entry.failure_reason = None
                entry.updated_at = _now()
            return replace(entry)

    async def mark_failed(
        self, fulfillment_key: str, reason: str, *, retryable: bool
    ) -> LedgerEntry:
        async with self._lock:
            entry = self._entries[fulfillment_key]
            # CREATED is immutable
            if entry.status != LedgerStatus.CREATED:
                entry.status = LedgerStatus.FAILED
                entry.failure_reason = reason
                entry.retryable = retryable
                entry.updated_at = _now()
            return replace(entry)

    async def reset(self, fulfillment_key: str) -> bool:
        async with self._lock:
            entry = self._entries.get(fulfillment_key)
            if entry is None or entry.status != LedgerStatus.FAILED:
                return False
            entry.retryable = True
            entry.updated_at = _now()
            return True


class InMemoryChargeEventLog:
    def __init__(self) -> None:
        self._seen: dict[str, ChargeEvent] = {}
        self._lock = asyncio.Lock()

    async def record(self, event: ChargeEvent) -> bool:
        async with self._lock:
            if event.charge_id in self._seen:
                return False
            self._seen[event.charge_id] = event
            return True

    async def has_seen(self, charge_id: str) -> bool:
        return charge_id in self._seen
