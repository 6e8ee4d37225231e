"""Background dispatch runner.

Decouples webhook acknowledgment from shipping-gateway latency. Each
accepted charge becomes an ``asyncio.Task`` that callers may await (tests,
the admin API) or ignore (the webhook handler). Strong references are held
until the task finishes so it cannot be garbage collected mid-flight.
"""

from __future__ import annotations

import asyncio
import logging

from recurship.dispatcher import FulfillmentDispatcher
from recurship.models import ChargeEvent, DispatchResult, DispatchStatus

logger = logging.getLogger(__name__)


class DispatchRunner:
    def __init__(self, dispatcher: FulfillmentDispatcher) -> None:
        self._dispatcher = dispatcher
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def submit(self, event: ChargeEvent) -> asyncio.Task:
        """Schedule fulfillment for an accepted charge and return the task."""
        task = asyncio.create_task(
            self._run(event), name=f"dispatch:{event.subscription_id}:{event.charge_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, event: ChargeEvent) -> DispatchResult:
        try:
            return await self._dispatcher.dispatch_charge(event)
        except Exception as e:
            # Left for the sweep to pick up
            logger.exception(
                "Background dispatch failed for %s/%s", event.subscription_id, event.charge_id
            )
            return DispatchResult(status=DispatchStatus.FAILED, reason=f"error: {type(e).__name__}")

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight dispatches, e.g. on shutdown."""
        if not self._tasks:
            return
        logger.info("Draining %d in-flight dispatches", len(self._tasks))
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        if pending:
            logger.warning("%d dispatches still running after drain timeout", len(pending))
