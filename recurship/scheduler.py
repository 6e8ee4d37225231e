"""Scheduler wiring for the reconciliation sweep.

One cron job (default: every day at midnight) runs the sweep. Jobs never
raise; a failed run is logged and the next tick retries everything.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from recurship.sweep import ReconciliationSweep

logger = logging.getLogger(__name__)

SWEEP_JOB_ID = "reconciliation_sweep"


def make_sweep_job(sweep: ReconciliationSweep) -> Callable[[], Awaitable[None]]:
    """Bind a sweep to a parameterless job function."""

    async def reconciliation_sweep_job() -> None:
        """Run one reconciliation sweep. Called on the sweep cron by APScheduler."""
        try:
            report = await sweep.run()
            if report.failed:
                logger.warning(
                    "Sweep finished with %d failures: %s", report.failed, report.failures
                )
        except Exception:
            logger.warning("Reconciliation sweep job failed", exc_info=True)

    return reconciliation_sweep_job


def build_scheduler(sweep: ReconciliationSweep, cron: str = "0 0 * * *") -> AsyncIOScheduler:
    """Create an AsyncIOScheduler with the sweep job registered (not started)."""
    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        make_sweep_job(sweep),
        CronTrigger.from_crontab(cron, timezone="UTC"),
        id=SWEEP_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info("Reconciliation sweep scheduled: cron=%r", cron)
    return scheduler
