"""Fulfillment dispatcher — idempotent shipment creation per billing cycle.

Both the webhook path and the reconciliation sweep end up here, so the
dedup and retry rules live in one place:

1. Unknown or inactive subscriptions never reach the shipping gateway.
2. The fulfillment ledger claim is the only gate. Losing the claim to
   another worker, or finding the key already CREATED, is reported as
   ``already_fulfilled``.
3. The same fulfillment key is sent on every gateway attempt.
4. Transient gateway failures are retried with bounded backoff, then the
   key is marked FAILED (retryable). Permanent failures are marked FAILED
   (not retryable) immediately.
5. Every store and gateway call is awaited with ``io_timeout``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from recurship.config import Settings
from recurship.exceptions import (
    InactiveSubscription,
    LedgerConflict,
    PermanentGatewayFailure,
    StoreUnavailable,
    TransientGatewayFailure,
    UnknownSubscription,
)
from recurship.gateways.base import ShippingGateway
from recurship.models import (
    ChargeEvent,
    DispatchResult,
    DispatchStatus,
    FulfillmentOrder,
    LedgerEntry,
    LedgerStatus,
    Subscription,
    fulfillment_key,
)
from recurship.retry import RetryPolicy, Sleep, retry_async
from recurship.store.base import FulfillmentLedger, SubscriptionStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _audit(result: DispatchResult, subscription_id: str, billing_cycle: str) -> None:
    logger.info(
        "FULFILLMENT_AUDIT key=%s subscription=%s cycle=%s status=%s order=%s reason=%s attempts=%d",
        result.fulfillment_key,
        subscription_id,
        billing_cycle,
        result.status.value,
        result.gateway_order_id or "-",
        result.reason or "-",
        result.attempts,
    )


class FulfillmentDispatcher:
    """Decides whether a shipment is owed and submits it exactly once."""

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        ledger: FulfillmentLedger,
        shipping: ShippingGateway,
        *,
        retry_policy: RetryPolicy | None = None,
        io_timeout: float = 10.0,
        pending_lease: timedelta = timedelta(minutes=15),
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._subscriptions = subscriptions
        self._ledger = ledger
        self._shipping = shipping
        self._retry_policy = retry_policy or RetryPolicy()
        self._io_timeout = io_timeout
        self._pending_lease = pending_lease
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        subscriptions: SubscriptionStore,
        ledger: FulfillmentLedger,
        shipping: ShippingGateway,
    ) -> FulfillmentDispatcher:
        return cls(
            subscriptions,
            ledger,
            shipping,
            retry_policy=RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
                jitter=settings.retry_jitter,
            ),
            io_timeout=settings.io_timeout,
            pending_lease=timedelta(seconds=settings.pending_lease_seconds),
        )

    async def _io(self, awaitable: Awaitable[Any], what: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._io_timeout)
        except asyncio.TimeoutError as e:
            raise StoreUnavailable(f"{what} timed out after {self._io_timeout}s") from e

    # -----------------------------------------------------------------------
    # Entry points
    # -----------------------------------------------------------------------

    async def dispatch_charge(self, event: ChargeEvent) -> DispatchResult:
        """Fulfill the billing cycle that contains an accepted charge."""
        subscription = await self._io(
            self._subscriptions.get_subscription(event.subscription_id),
            "subscription lookup",
        )
        if subscription is None:
            result = DispatchResult(
                status=DispatchStatus.FAILED, reason="unknown_subscription"
            )
            logger.error(
                "Charge %s references unknown subscription %s",
                event.charge_id,
                event.subscription_id,
            )
            _audit(result, event.subscription_id, "-")
            return result

        billing_cycle = subscription.cycle_at(event.observed_at)
        await self._io(
            self._subscriptions.mark_charged(event.subscription_id, billing_cycle),
            "mark charged",
        )
        return await self.dispatch(event.subscription_id, billing_cycle)

    async def dispatch(self, subscription_id: str, billing_cycle: str) -> DispatchResult:
        """Create the shipment for one subscription cycle unless it exists."""
        key = fulfillment_key(subscription_id, billing_cycle)

        try:
            subscription = await self._load_active(subscription_id)
        except UnknownSubscription:
            logger.error("Dispatch for unknown subscription %s", subscription_id)
            result = DispatchResult(
                status=DispatchStatus.FAILED, fulfillment_key=key, reason="unknown_subscription"
            )
            _audit(result, subscription_id, billing_cycle)
            return result
        except InactiveSubscription:
            # Policy skip, not a transport failure
            logger.warning(
                "Skipping fulfillment for inactive subscription %s (cycle=%s)",
                subscription_id,
                billing_cycle,
            )
            result = DispatchResult(
                status=DispatchStatus.FAILED, fulfillment_key=key, reason="inactive_subscription"
            )
            _audit(result, subscription_id, billing_cycle)
            return result

        try:
            entry = await self._claim(key, subscription_id, billing_cycle)
        except LedgerConflict:
            result = DispatchResult(
                status=DispatchStatus.ALREADY_FULFILLED, fulfillment_key=key, reason="claimed"
            )
            _audit(result, subscription_id, billing_cycle)
            return result

        if entry.status == LedgerStatus.CREATED:
            result = DispatchResult(
                status=DispatchStatus.ALREADY_FULFILLED,
                fulfillment_key=key,
                gateway_order_id=entry.gateway_order_id,
                attempts=entry.attempts,
            )
            _audit(result, subscription_id, billing_cycle)
            return result
        if entry.status == LedgerStatus.FAILED:
            # Permanent failure awaiting manual reset
            result = DispatchResult(
                status=DispatchStatus.FAILED,
                fulfillment_key=key,
                reason=entry.failure_reason or "permanent_failure",
                attempts=entry.attempts,
            )
            _audit(result, subscription_id, billing_cycle)
            return result

        order = FulfillmentOrder.for_cycle(subscription, billing_cycle, self._clock())
        result = await self._submit(order)
        _audit(result, subscription_id, billing_cycle)
        return result

    # -----------------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------------

    async def _load_active(self, subscription_id: str) -> Subscription:
        subscription = await self._io(
            self._subscriptions.get_subscription(subscription_id), "subscription lookup"
        )
        if subscription is None:
            raise UnknownSubscription(subscription_id)
        if not subscription.active:
            raise InactiveSubscription(subscription_id)
        return subscription

    async def _claim(
        self, key: str, subscription_id: str, billing_cycle: str
    ) -> LedgerEntry:
        """Claim the key. Returns the claimed PENDING entry or a terminal one.

        Raises ``LedgerConflict`` when a live claim is held elsewhere.
        """
        claimed, entry = await self._io(
            self._ledger.claim(
                key,
                subscription_id,
                billing_cycle,
                lease_expired_before=self._clock() - self._pending_lease,
            ),
            "ledger claim",
        )
        if claimed:
            return entry
        if entry.status == LedgerStatus.PENDING:
            logger.info("Fulfillment %s is being dispatched by another worker", key)
            raise LedgerConflict(key)
        return entry

    async def _submit(self, order: FulfillmentOrder) -> DispatchResult:
        key = order.fulfillment_key
        attempts = 0

        async def _create_order() -> str:
            nonlocal attempts
            attempts += 1
            try:
                return await asyncio.wait_for(
                    self._shipping.create_order(order), timeout=self._io_timeout
                )
            except asyncio.TimeoutError as e:
                raise TransientGatewayFailure(
                    f"create_order timed out after {self._io_timeout}s"
                ) from e

        try:
            gateway_order_id = await retry_async(
                _create_order,
                self._retry_policy,
                sleep=self._sleep,
                label=f"create_order[{key}]",
            )
        except TransientGatewayFailure as e:
            logger.error(
                "Fulfillment %s failed after %d attempts: %s", key, attempts, e
            )
            await self._io(
                self._ledger.mark_failed(key, str(e), retryable=True), "ledger mark_failed"
            )
            return DispatchResult(
                status=DispatchStatus.FAILED, fulfillment_key=key, reason=str(e), attempts=attempts
            )
        except PermanentGatewayFailure as e:
            logger.error("Fulfillment %s permanently rejected: %s", key, e)
            await self._io(
                self._ledger.mark_failed(key, str(e), retryable=False), "ledger mark_failed"
            )
            return DispatchResult(
                status=DispatchStatus.FAILED, fulfillment_key=key, reason=str(e), attempts=attempts
            )

        try:
            await self._io(
                self._ledger.mark_created(key, gateway_order_id), "ledger mark_created"
            )
        except StoreUnavailable:
            # The pending lease expires and the next dispatch resubmits with the same key
            logger.error(
                "Order %s created for %s but ledger write failed", gateway_order_id, key
            )
            raise
        return DispatchResult(
            status=DispatchStatus.CREATED,
            fulfillment_key=key,
            gateway_order_id=gateway_order_id,
            attempts=attempts,
        )
