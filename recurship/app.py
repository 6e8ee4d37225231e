"""Application assembly — wires stores, gateways and the core into FastAPI.

Everything is built from one ``Settings`` instance. Tests pass their own
fakes to ``build_services``; production relies on the defaults:

- Postgres for subscriptions, ledger and charge log when ``database_url`` is set
- Redis charge dedup when ``redis_url`` is set
- In-memory stores otherwise (development only)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from fastapi import FastAPI

from recurship import __version__
from recurship.api.admin import router as admin_router
from recurship.api.webhooks import register_webhook_routes
from recurship.config import Settings
from recurship.dispatcher import FulfillmentDispatcher
from recurship.gateways.base import PaymentGateway, PaymentWebhookSource, ShippingGateway
from recurship.gateways.razorpay import RazorpayClient, RazorpayWebhookSource
from recurship.gateways.shiprocket import ShiprocketGateway
from recurship.ingestion import EventIngestor
from recurship.runner import DispatchRunner
from recurship.scheduler import build_scheduler
from recurship.store.base import ChargeEventLog, FulfillmentLedger, SubscriptionStore
from recurship.store.memory import (
    InMemoryChargeEventLog,
    InMemoryFulfillmentLedger,
    InMemorySubscriptionStore,
)
from recurship.store.postgres import PostgresStore
from recurship.store.redis_dedup import RedisChargeEventLog
from recurship.sweep import ReconciliationSweep

logger = logging.getLogger(__name__)

# Seconds to wait for in-flight dispatches on shutdown
_DRAIN_TIMEOUT = 30.0


@dataclass
class Services:
    """Every long-lived component, built once per process."""

    settings: Settings
    subscriptions: SubscriptionStore
    ledger: FulfillmentLedger
    charge_log: ChargeEventLog
    shipping: ShippingGateway
    payment: PaymentGateway | None
    webhook_source: PaymentWebhookSource
    dispatcher: FulfillmentDispatcher
    runner: DispatchRunner
    ingestor: EventIngestor
    sweep: ReconciliationSweep
    webhook_counts: dict[str, int] = field(default_factory=dict)
    closers: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    async def aclose(self) -> None:
        for close in self.closers:
            try:
                await close()
            except Exception:
                logger.warning("Error while closing %r", close, exc_info=True)


def build_services(
    settings: Settings,
    *,
    subscriptions: SubscriptionStore | None = None,
    ledger: FulfillmentLedger | None = None,
    charge_log: ChargeEventLog | None = None,
    shipping: ShippingGateway | None = None,
    payment: PaymentGateway | None = None,
    webhook_source: PaymentWebhookSource | None = None,
) -> Services:
    closers: list[Callable[[], Awaitable[Any]]] = []

    if settings.database_url:
        pg = PostgresStore(settings.database_url, connect_timeout=int(settings.io_timeout))
        subscriptions = subscriptions or pg
        ledger = ledger or pg
        charge_log = charge_log or pg
    elif subscriptions is None or ledger is None:
        logger.warning("No database_url configured — using in-memory stores")

    if charge_log is None and settings.redis_url:
        redis_log = RedisChargeEventLog.from_url(settings.redis_url, settings.dedup_ttl_seconds)
        closers.append(redis_log.close)
        charge_log = redis_log

    subscriptions = subscriptions or InMemorySubscriptionStore()
    ledger = ledger or InMemoryFulfillmentLedger()
    charge_log = charge_log or InMemoryChargeEventLog()

    if shipping is None:
        shiprocket = ShiprocketGateway(
            settings.shiprocket_token,
            base_url=settings.shiprocket_base_url,
            timeout=settings.io_timeout,
            pickup_location=settings.pickup_location,
            default_city=settings.default_city,
            default_pincode=settings.default_pincode,
            default_country=settings.default_country,
        )
        closers.append(shiprocket.aclose)
        shipping = shiprocket

    if payment is None and settings.razorpay_key_id:
        razorpay = RazorpayClient(
            settings.razorpay_key_id,
            settings.razorpay_key_secret,
            base_url=settings.razorpay_base_url,
            timeout=settings.io_timeout,
            total_count=settings.subscription_total_count,
        )
        closers.append(razorpay.aclose)
        payment = razorpay

    webhook_source = webhook_source or RazorpayWebhookSource(settings.razorpay_webhook_secret)

    dispatcher = FulfillmentDispatcher.from_settings(settings, subscriptions, ledger, shipping)
    runner = DispatchRunner(dispatcher)
    ingestor = EventIngestor(
        charge_log,
        runner.submit,
        charge_event_type=settings.charge_event_type,
        io_timeout=settings.io_timeout,
    )
    sweep = ReconciliationSweep(
        subscriptions,
        ledger,
        dispatcher,
        payment_gateway=payment if settings.sweep_verify_charges else None,
        io_timeout=settings.io_timeout,
    )
    return Services(
        settings=settings,
        subscriptions=subscriptions,
        ledger=ledger,
        charge_log=charge_log,
        shipping=shipping,
        payment=payment,
        webhook_source=webhook_source,
        dispatcher=dispatcher,
        runner=runner,
        ingestor=ingestor,
        sweep=sweep,
        closers=closers,
    )


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Create the FastAPI app. The sweep scheduler runs inside the lifespan."""
    settings = settings or (services.settings if services else Settings())
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        scheduler = None
        if settings.sweep_enabled:
            scheduler = build_scheduler(services.sweep, settings.sweep_cron)
            scheduler.start()
        try:
            yield
        finally:
            if scheduler is not None:
                scheduler.shutdown(wait=False)
            await services.runner.drain(timeout=_DRAIN_TIMEOUT)
            await services.aclose()

    app = FastAPI(title="recurship", version=__version__, lifespan=lifespan)
    app.state.services = services

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    register_webhook_routes(app)
    app.include_router(admin_router)
    return app
