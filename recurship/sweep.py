"""Reconciliation sweep — re-drive fulfillment that webhooks may have missed.

For every active subscription, the current billing cycle must end up with a
CREATED ledger entry. The sweep keeps no state of its own: an interrupted
run is resumed by running it again, and a sweep racing a live webhook for
the same cycle is resolved by the dispatcher's ledger claim.

When a payment gateway is configured, a cycle is only re-driven once the
provider confirms a paid charge in it (or a charge webhook already advanced
``last_charged_cycle``), so the sweep never ships ahead of payment.

``last_charged_cycle`` is also re-driven when it is no longer the current
cycle, so a dispatch that failed on the last day of a cycle is not lost
when the calendar moves on.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from recurship.dispatcher import FulfillmentDispatcher
from recurship.gateways.base import PaymentGateway
from recurship.models import (
    DispatchStatus,
    LedgerEntry,
    LedgerStatus,
    Subscription,
    cycle_bounds,
    fulfillment_key,
)
from recurship.store.base import FulfillmentLedger, SubscriptionStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SweepReport:
    """Counts for one sweep run.

    ``failures`` is keyed by subscription id for the current cycle and by
    fulfillment key for a re-driven earlier cycle.
    """

    started_at: datetime
    finished_at: datetime | None = None
    scanned: int = 0
    dispatched: int = 0
    created: int = 0
    already_fulfilled: int = 0
    skipped: int = 0
    failed: int = 0
    failures: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "scanned": self.scanned,
            "dispatched": self.dispatched,
            "created": self.created,
            "already_fulfilled": self.already_fulfilled,
            "skipped": self.skipped,
            "failed": self.failed,
            "failures": dict(self.failures),
        }


class ReconciliationSweep:
    def __init__(
        self,
        subscriptions: SubscriptionStore,
        ledger: FulfillmentLedger,
        dispatcher: FulfillmentDispatcher,
        *,
        payment_gateway: PaymentGateway | None = None,
        io_timeout: float = 10.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._subscriptions = subscriptions
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._payment_gateway = payment_gateway
        self._io_timeout = io_timeout
        self._clock = clock

    async def run(self, now: datetime | None = None) -> SweepReport:
        """Scan all active subscriptions once. Never raises for a single subscription."""
        now = now or self._clock()
        started = time.monotonic()
        report = SweepReport(started_at=now)
        logger.info("Reconciliation sweep started at %s", now.isoformat())

        async for subscription in self._subscriptions.list_active_subscriptions():
            report.scanned += 1
            try:
                await self._reconcile(subscription, now, report)
            except Exception as e:
                report.failed += 1
                report.failures[subscription.subscription_id] = type(e).__name__
                logger.exception(
                    "Sweep failed for subscription %s", subscription.subscription_id
                )

        report.finished_at = now + timedelta(seconds=time.monotonic() - started)
        logger.info(
            "Reconciliation sweep complete: scanned=%d dispatched=%d created=%d "
            "already_fulfilled=%d skipped=%d failed=%d",
            report.scanned,
            report.dispatched,
            report.created,
            report.already_fulfilled,
            report.skipped,
            report.failed,
        )
        return report

    async def _reconcile(
        self, subscription: Subscription, now: datetime, report: SweepReport
    ) -> None:
        sub_id = subscription.subscription_id
        if not subscription.has_started(now):
            report.skipped += 1
            return

        billing_cycle = subscription.cycle_at(now)

        # A charged cycle whose dispatch failed late in the cycle is no longer
        # the current one; it is re-driven until its entry is CREATED
        charged_cycle = subscription.last_charged_cycle
        if charged_cycle and charged_cycle != billing_cycle:
            entry = await self._get_entry(sub_id, charged_cycle)
            if entry is None or entry.status != LedgerStatus.CREATED:
                logger.info("Re-driving charged cycle %s for %s", charged_cycle, sub_id)
                await self._dispatch(
                    sub_id, charged_cycle, report, fulfillment_key(sub_id, charged_cycle)
                )

        entry = await self._get_entry(sub_id, billing_cycle)
        if entry is not None and entry.status == LedgerStatus.CREATED:
            report.already_fulfilled += 1
            return

        if not await self._is_charged(subscription, billing_cycle, now):
            logger.debug("Subscription %s not yet charged for %s", sub_id, billing_cycle)
            report.skipped += 1
            return

        await self._dispatch(sub_id, billing_cycle, report, sub_id)

    async def _get_entry(self, subscription_id: str, billing_cycle: str) -> LedgerEntry | None:
        return await asyncio.wait_for(
            self._ledger.get(fulfillment_key(subscription_id, billing_cycle)),
            timeout=self._io_timeout,
        )

    async def _dispatch(
        self, subscription_id: str, billing_cycle: str, report: SweepReport, failure_key: str
    ) -> None:
        report.dispatched += 1
        result = await self._dispatcher.dispatch(subscription_id, billing_cycle)
        if result.status == DispatchStatus.CREATED:
            report.created += 1
        elif result.status == DispatchStatus.ALREADY_FULFILLED:
            report.already_fulfilled += 1
        else:
            report.failed += 1
            report.failures[failure_key] = result.reason or "failed"

    async def _is_charged(
        self, subscription: Subscription, billing_cycle: str, now: datetime
    ) -> bool:
        if self._payment_gateway is None:
            return True
        if subscription.last_charged_cycle == billing_cycle:
            return True
        since, until = cycle_bounds(subscription.cadence, now)
        charges = await asyncio.wait_for(
            self._payment_gateway.charge_lookup(subscription.subscription_id, since, until),
            timeout=self._io_timeout,
        )
        return bool(charges)
