"""Postgres-backed store (psycopg 3, async).

Tables:
- subscriptions: one row per provider subscription, items/shipping as JSONB
- fulfillment_ledger: one row per fulfillment key
- charge_events: seen-set of provider charge ids

Atomicity comes from single statements: the ledger claim is one
``INSERT ... ON CONFLICT DO UPDATE ... WHERE`` and the charge log is one
``INSERT ... ON CONFLICT DO NOTHING``. No read-then-write.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, AsyncIterator

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from recurship.models import (
    Cadence,
    ChargeEvent,
    LedgerEntry,
    LedgerStatus,
    LineItem,
    ShippingAddress,
    Subscription,
)

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS subscriptions (
    subscription_id    TEXT PRIMARY KEY,
    customer_id        TEXT NOT NULL,
    plan_id            TEXT NOT NULL DEFAULT '',
    active             BOOLEAN NOT NULL DEFAULT TRUE,
    cadence            TEXT NOT NULL DEFAULT 'monthly',
    start_at           TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    items              JSONB NOT NULL DEFAULT '[]'::jsonb,
    shipping           JSONB NOT NULL DEFAULT '{}'::jsonb,
    last_charged_cycle TEXT
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_active
    ON subscriptions (subscription_id) WHERE active;

CREATE TABLE IF NOT EXISTS fulfillment_ledger (
    fulfillment_key  TEXT PRIMARY KEY,
    subscription_id  TEXT NOT NULL,
    billing_cycle    TEXT NOT NULL,
    status           TEXT NOT NULL DEFAULT 'pending',
    gateway_order_id TEXT,
    failure_reason   TEXT,
    retryable        BOOLEAN NOT NULL DEFAULT TRUE,
    attempts         INTEGER NOT NULL DEFAULT 0,
    updated_at       TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_fulfillment_ledger_subscription
    ON fulfillment_ledger (subscription_id, billing_cycle);

CREATE TABLE IF NOT EXISTS charge_events (
    charge_id       TEXT PRIMARY KEY,
    subscription_id TEXT NOT NULL,
    customer_id     TEXT,
    event_type      TEXT NOT NULL DEFAULT '',
    observed_at     TIMESTAMPTZ NOT NULL,
    received_at     TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""


class PostgresStore:
    """Implements SubscriptionStore, FulfillmentLedger and ChargeEventLog."""

    def __init__(self, database_url: str, connect_timeout: int = 10) -> None:
        self._database_url = database_url
        self._connect_timeout = connect_timeout

    async def _connect(self) -> psycopg.AsyncConnection:
        return await psycopg.AsyncConnection.connect(
            self._database_url,
            autocommit=True,
            row_factory=dict_row,
            connect_timeout=self._connect_timeout,
        )

    async def init_schema(self) -> None:
        async with await self._connect() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Database schema ensured")

    # -- subscriptions ------------------------------------------------------

    async def get_subscription(self, subscription_id: str) -> Subscription | None:
        async with await self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM subscriptions WHERE subscription_id = %s",
                (subscription_id,),
            )
            row = await cur.fetchone()
        return _row_to_subscription(row) if row else None

    async def list_active_subscriptions(self) -> AsyncIterator[Subscription]:
        async with await self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM subscriptions WHERE active ORDER BY subscription_id"
            )
            rows = await cur.fetchall()
        for row in rows:
            yield _row_to_subscription(row)

    async def save_subscription(self, subscription: Subscription) -> None:
        async with await self._connect() as conn:
            await conn.execute(
                """INSERT INTO subscriptions
                       (subscription_id, customer_id, plan_id, active, cadence,
                        start_at, items, shipping, last_charged_cycle)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                   ON CONFLICT (subscription_id) DO UPDATE SET
                       customer_id = EXCLUDED.customer_id,
                       plan_id = EXCLUDED.plan_id,
                       active = EXCLUDED.active,
                       cadence = EXCLUDED.cadence,
                       start_at = EXCLUDED.start_at,
                       items = EXCLUDED.items,
                       shipping = EXCLUDED.shipping,
                       last_charged_cycle = EXCLUDED.last_charged_cycle""",
                (
                    subscription.subscription_id,
                    subscription.customer_id,
                    subscription.plan_id,
                    subscription.active,
                    subscription.cadence.value,
                    subscription.start_at,
                    Jsonb([item.to_dict() for item in subscription.items]),
                    Jsonb(subscription.shipping.to_dict()),
                    subscription.last_charged_cycle,
                ),
            )

    async def set_active(self, subscription_id: str, active: bool) -> bool:
        async with await self._connect() as conn:
            cur = await conn.execute(
                "UPDATE subscriptions SET active = %s WHERE subscription_id = %s",
                (active, subscription_id),
            )
        return cur.rowcount > 0

    async def mark_charged(self, subscription_id: str, billing_cycle: str) -> None:
        async with await self._connect() as conn:
            await conn.execute(
                """UPDATE subscriptions SET last_charged_cycle = %s
                   WHERE subscription_id = %s
                     AND (last_charged_cycle IS NULL OR last_charged_cycle < %s)""",
                (billing_cycle, subscription_id, billing_cycle),
            )

    # -- fulfillment ledger -------------------------------------------------

    async def get(self, fulfillment_key: str) -> LedgerEntry | None:
        async with await self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM fulfillment_ledger WHERE fulfillment_key = %s",
                (fulfillment_key,),
            )
            row = await cur.fetchone()
        return _row_to_ledger_entry(row) if row else None

    async def claim(
        self,
        fulfillment_key: str,
        subscription_id: str,
        billing_cycle: str,
        *,
        lease_expired_before: datetime,
    ) -> tuple[bool, LedgerEntry]:
        async with await self._connect() as conn:
            cur = await conn.execute(
                """INSERT INTO fulfillment_ledger
                       (fulfillment_key, subscription_id, billing_cycle, status,
                        attempts, updated_at)
                   VALUES (%s, %s, %s, 'pending', 1, NOW())
                   ON CONFLICT (fulfillment_key) DO UPDATE SET
                       status = 'pending',
                       failure_reason = NULL,
                       attempts = fulfillment_ledger.attempts + 1,
                       updated_at = NOW()
                   WHERE (fulfillment_ledger.status = 'failed'
                          AND fulfillment_ledger.retryable)
                      OR (fulfillment_ledger.status = 'pending'
                          AND fulfillment_ledger.updated_at < %s)
                   RETURNING *""",
                (fulfillment_key, subscription_id, billing_cycle, lease_expired_before),
            )
            row = await cur.fetchone()
            if row is not None:
                return True, _row_to_ledger_entry(row)
            cur = await conn.execute(
                "SELECT * FROM fulfillment_ledger WHERE fulfillment_key = %s",
                (fulfillment_key,),
            )
            existing = await cur.fetchone()
        return False, _row_to_ledger_entry(existing)

    async def mark_created(self, fulfillment_key: str, gateway_order_id: str) -> LedgerEntry:
        async with await self._connect() as conn:
            await conn.execute(
                """UPDATE fulfillment_ledger
                   SET status = 'created', gateway_order_id = %s,
                       failure_reason = NULL, updated_at = NOW()
                   WHERE fulfillment_key = %s AND status <> 'created'""",
                (gateway_order_id, fulfillment_key),
            )
            cur = await conn.execute(
                "SELECT * FROM fulfillment_ledger WHERE fulfillment_key = %s",
                (fulfillment_key,),
            )
            row = await cur.fetchone()
        return _row_to_ledger_entry(row)

    async def mark_failed(
        self, fulfillment_key: str, reason: str, *, retryable: bool
    ) -> LedgerEntry:
        async with await self._connect() as conn:
            await conn.execute(
                """UPDATE fulfillment_ledger
                   SET status = 'failed', failure_reason = %s, retryable = %s,
                       updated_at = NOW()
                   WHERE fulfillment_key = %s AND status <> 'created'""",
                (reason, retryable, fulfillment_key),
            )
            cur = await conn.execute(
                "SELECT * FROM fulfillment_ledger WHERE fulfillment_key = %s",
                (fulfillment_key,),
            )
            row = await cur.fetchone()
        return _row_to_ledger_entry(row)

    async def reset(self, fulfillment_key: str) -> bool:
        async with await self._connect() as conn:
            cur = await conn.execute(
                """UPDATE fulfillment_ledger
                   SET retryable = TRUE, updated_at = NOW()
                   WHERE fulfillment_key = %s AND status = 'failed'""",
                (fulfillment_key,),
            )
        return cur.rowcount > 0

    # -- charge events ------------------------------------------------------

    async def record(self, event: ChargeEvent) -> bool:
        async with await self._connect() as conn:
            cur = await conn.execute(
                """INSERT INTO charge_events
                       (charge_id, subscription_id, customer_id, event_type, observed_at)
                   VALUES (%s, %s, %s, %s, %s)
                   ON CONFLICT (charge_id) DO NOTHING""",
                (
                    event.charge_id,
                    event.subscription_id,
                    event.customer_id,
                    event.event_type,
                    event.observed_at,
                ),
            )
        return cur.rowcount == 1

    async def has_seen(self, charge_id: str) -> bool:
        async with await self._connect() as conn:
            cur = await conn.execute(
                "SELECT 1 FROM charge_events WHERE charge_id = %s", (charge_id,)
            )
            row = await cur.fetchone()
        return row is not None


def _row_to_subscription(row: dict[str, Any]) -> Subscription:
    return Subscription(
        subscription_id=row["subscription_id"],
        customer_id=row["customer_id"],
        plan_id=row["plan_id"],
        active=bool(row["active"]),
        cadence=Cadence(row["cadence"]),
        start_at=row["start_at"],
        items=[LineItem.from_dict(item) for item in row["items"] or []],
        shipping=ShippingAddress.from_dict(row["shipping"] or {}),
        last_charged_cycle=row["last_charged_cycle"],
    )


def _row_to_ledger_entry(row: dict[str, Any]) -> LedgerEntry:
    return LedgerEntry(
        fulfillment_key=row["fulfillment_key"],
        subscription_id=row["subscription_id"],
        billing_cycle=row["billing_cycle"],
        status=LedgerStatus(row["status"]),
        gateway_order_id=row["gateway_order_id"],
        failure_reason=row["failure_reason"],
        retryable=bool(row["retryable"]),
        attempts=int(row["attempts"]),
        updated_at=row["updated_at"],
    )
