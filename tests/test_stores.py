"""Tests for the store implementations.

Tests:
- In-memory ledger claim semantics (new, live, stale, failed, created)
- In-memory subscription store copies and advance-only charge marker
- Redis charge log: SET NX dedup, TTL, fail-open
- Postgres store: SQL shape and row mapping against a mocked connection
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import redis.asyncio as redis

from fakes import make_subscription
from recurship.models import Cadence, ChargeEvent, LedgerStatus
from recurship.store.memory import (
    InMemoryChargeEventLog,
    InMemoryFulfillmentLedger,
    InMemorySubscriptionStore,
)
from recurship.store.postgres import SCHEMA_SQL, PostgresStore
from recurship.store.redis_dedup import RedisChargeEventLog

UTC = timezone.utc
KEY = "sub_1:2024-06"


def _far_past() -> datetime:
    return datetime(2000, 1, 1, tzinfo=UTC)


def _future() -> datetime:
    return datetime.now(UTC) + timedelta(hours=1)


def _event(charge_id: str = "ch_1") -> ChargeEvent:
    return ChargeEvent(
        subscription_id="sub_1",
        charge_id=charge_id,
        observed_at=datetime(2024, 6, 15, tzinfo=UTC),
        event_type="subscription.charged",
    )


# ── In-memory ledger ──────────────────────────────────────────────────────


class TestInMemoryLedger:
    @pytest.mark.asyncio
    async def test_first_claim_creates_pending(self):
        ledger = InMemoryFulfillmentLedger()
        claimed, entry = await ledger.claim(KEY, "sub_1", "2024-06", lease_expired_before=_far_past())
        assert claimed
        assert entry.status == LedgerStatus.PENDING
        assert entry.attempts == 1

    @pytest.mark.asyncio
    async def test_live_pending_not_reclaimable(self):
        ledger = InMemoryFulfillmentLedger()
        await ledger.claim(KEY, "sub_1", "2024-06", lease_expired_before=_far_past())
        claimed, entry = await ledger.claim(KEY, "sub_1", "2024-06", lease_expired_before=_far_past())
        assert not claimed
        assert entry.status == LedgerStatus.PENDING

    @pytest.mark.asyncio
    async def test_stale_pending_reclaimed(self):
        ledger = InMemoryFulfillmentLedger()
        await ledger.claim(KEY, "sub_1", "2024-06", lease_expired_before=_far_past())
        claimed, entry = await ledger.claim(KEY, "sub_1", "2024-06", lease_expired_before=_future())
        assert claimed
        assert entry.attempts == 2

    @pytest.mark.asyncio
    async def test_concurrent_claims_single_winner(self):
        ledger = InMemoryFulfillmentLedger()
        results = await asyncio.gather(
            *(
                ledger.claim(KEY, "sub_1", "2024-06", lease_expired_before=_far_past())
                for _ in range(20)
            )
        )
        assert sum(claimed for claimed, _ in results) == 1

    @pytest.mark.asyncio
    async def test_retryable_failure_reclaimable(self):
        ledger = InMemoryFulfillmentLedger()
        await ledger.claim(KEY, "sub_1", "2024-06", lease_expired_before=_far_past())
        await ledger.mark_failed(KEY, "HTTP 503", retryable=True)
        claimed, entry = await ledger.claim(KEY, "sub_1", "2024-06", lease_expired_before=_far_past())
        assert claimed
        assert entry.status == LedgerStatus.PENDING
        assert entry.failure_reason is None

    @pytest.mark.asyncio
    async def test_permanent_failure_needs_reset(self):
        ledger = InMemoryFulfillmentLedger()
        await ledger.claim(KEY, "sub_1", "2024-06", lease_expired_before=_far_past())
        await ledger.mark_failed(KEY, "HTTP 422", retryable=False)

        claimed, entry = await ledger.claim(KEY, "sub_1", "2024-06", lease_expired_before=_future())
        assert not claimed
        assert entry.status == LedgerStatus.FAILED

        assert await ledger.reset(KEY)
        claimed, _ = await ledger.claim(KEY, "sub_1", "2024-06", lease_expired_before=_far_past())
        assert claimed

    @pytest.mark.asyncio
    async def test_created_is_terminal(self):
        ledger = InMemoryFulfillmentLedger()
        await ledger.claim(KEY, "sub_1", "2024-06", lease_expired_before=_far_past())
        await ledger.mark_created(KEY, "SR-1")

        entry = await ledger.mark_failed(KEY, "late failure", retryable=True)
        assert entry.status == LedgerStatus.CREATED
        entry = await ledger.mark_created(KEY, "SR-2")
        assert entry.gateway_order_id == "SR-1"

        claimed, _ = await ledger.claim(KEY, "sub_1", "2024-06", lease_expired_before=_future())
        assert not claimed
        assert not await ledger.reset(KEY)

    @pytest.mark.asyncio
    async def test_reset_unknown_key(self):
        assert not await InMemoryFulfillmentLedger().reset("nope:2024-06")

    @pytest.mark.asyncio
    async def test_get_returns_copy(self):
        ledger = InMemoryFulfillmentLedger()
        await ledger.claim(KEY, "sub_1", "2024-06", lease_expired_before=_far_past())
        entry = await ledger.get(KEY)
        entry.status = LedgerStatus.CREATED
        assert (await ledger.get(KEY)).status == LedgerStatus.PENDING


# ── In-memory subscriptions and charge log ────────────────────────────────


class TestInMemorySubscriptionStore:
    @pytest.mark.asyncio
    async def test_returns_copies(self):
        store = InMemorySubscriptionStore([make_subscription()])
        sub = await store.get_subscription("sub_1")
        sub.items.clear()
        assert len((await store.get_subscription("sub_1")).items) == 1

    @pytest.mark.asyncio
    async def test_lists_only_active(self):
        store = InMemorySubscriptionStore(
            [make_subscription("a"), make_subscription("b", active=False)]
        )
        assert [s.subscription_id async for s in store.list_active_subscriptions()] == ["a"]

    @pytest.mark.asyncio
    async def test_set_active(self):
        store = InMemorySubscriptionStore([make_subscription()])
        assert await store.set_active("sub_1", False)
        assert not (await store.get_subscription("sub_1")).active
        assert not await store.set_active("missing", False)

    @pytest.mark.asyncio
    async def test_mark_charged_only_advances(self):
        store = InMemorySubscriptionStore([make_subscription()])
        await store.mark_charged("sub_1", "2024-06")
        await store.mark_charged("sub_1", "2024-05")
        assert (await store.get_subscription("sub_1")).last_charged_cycle == "2024-06"


class TestInMemoryChargeEventLog:
    @pytest.mark.asyncio
    async def test_first_record_wins(self):
        log = InMemoryChargeEventLog()
        assert await log.record(_event())
        assert not await log.record(_event())
        assert await log.has_seen("ch_1")
        assert not await log.has_seen("ch_2")


# ── Redis charge log ──────────────────────────────────────────────────────


class TestRedisChargeEventLog:
    @pytest.mark.asyncio
    async def test_new_charge_recorded(self):
        client = AsyncMock()
        client.set.return_value = True
        log = RedisChargeEventLog(client, ttl_seconds=3600)

        assert await log.record(_event())
        client.set.assert_awaited_once_with("charge:seen:ch_1", "sub_1", nx=True, ex=3600)

    @pytest.mark.asyncio
    async def test_duplicate_charge(self):
        client = AsyncMock()
        client.set.return_value = None
        log = RedisChargeEventLog(client)

        assert not await log.record(_event())

    @pytest.mark.asyncio
    async def test_zero_ttl_keeps_forever(self):
        client = AsyncMock()
        client.set.return_value = True
        await RedisChargeEventLog(client, ttl_seconds=0).record(_event())
        assert client.set.await_args.kwargs["ex"] is None

    @pytest.mark.asyncio
    async def test_redis_down_fails_open(self):
        client = AsyncMock()
        client.set.side_effect = redis.ConnectionError("refused")
        log = RedisChargeEventLog(client)

        assert await log.record(_event())

    @pytest.mark.asyncio
    async def test_has_seen(self):
        client = AsyncMock()
        client.exists.return_value = 1
        assert await RedisChargeEventLog(client).has_seen("ch_1")
        client.exists.assert_awaited_once_with("charge:seen:ch_1")

    @pytest.mark.asyncio
    async def test_close(self):
        client = AsyncMock()
        await RedisChargeEventLog(client).close()
        client.aclose.assert_awaited_once()


# ── Postgres store ────────────────────────────────────────────────────────


def _mock_connection(*fetchone_results, rowcount: int = 1):
    cursor = MagicMock()
    cursor.fetchone = AsyncMock(side_effect=list(fetchone_results))
    cursor.fetchall = AsyncMock(return_value=[])
    cursor.rowcount = rowcount
    conn = MagicMock()
    conn.execute = AsyncMock(return_value=cursor)
    conn.__aenter__ = AsyncMock(return_value=conn)
    conn.__aexit__ = AsyncMock(return_value=False)
    return conn


def _ledger_row(**overrides) -> dict:
    row = {
        "fulfillment_key": KEY,
        "subscription_id": "sub_1",
        "billing_cycle": "2024-06",
        "status": "pending",
        "gateway_order_id": None,
        "failure_reason": None,
        "retryable": True,
        "attempts": 1,
        "updated_at": datetime(2024, 6, 15, tzinfo=UTC),
    }
    row.update(overrides)
    return row


class TestPostgresStore:
    @pytest.mark.asyncio
    async def test_claim_won(self):
        conn = _mock_connection(_ledger_row())
        with patch("psycopg.AsyncConnection.connect", AsyncMock(return_value=conn)):
            claimed, entry = await PostgresStore("postgresql://test").claim(
                KEY, "sub_1", "2024-06", lease_expired_before=_far_past()
            )
        assert claimed
        assert entry.status == LedgerStatus.PENDING
        sql = conn.execute.await_args_list[0].args[0]
        assert "ON CONFLICT (fulfillment_key) DO UPDATE" in sql
        assert "RETURNING *" in sql

    @pytest.mark.asyncio
    async def test_claim_lost_reads_existing(self):
        conn = _mock_connection(None, _ledger_row(status="created", gateway_order_id="SR-1"))
        with patch("psycopg.AsyncConnection.connect", AsyncMock(return_value=conn)):
            claimed, entry = await PostgresStore("postgresql://test").claim(
                KEY, "sub_1", "2024-06", lease_expired_before=_far_past()
            )
        assert not claimed
        assert entry.status == LedgerStatus.CREATED
        assert entry.gateway_order_id == "SR-1"
        assert conn.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_record_uses_rowcount(self):
        conn = _mock_connection(rowcount=0)
        with patch("psycopg.AsyncConnection.connect", AsyncMock(return_value=conn)):
            assert not await PostgresStore("postgresql://test").record(_event())
        assert "ON CONFLICT (charge_id) DO NOTHING" in conn.execute.await_args.args[0]

    @pytest.mark.asyncio
    async def test_get_subscription_maps_row(self):
        row = {
            "subscription_id": "sub_1",
            "customer_id": "cust_1",
            "plan_id": "plan_1",
            "active": True,
            "cadence": "weekly",
            "start_at": datetime(2024, 1, 1, tzinfo=UTC),
            "items": [{"name": "Kibble", "sku": "K1", "unit_price": 1499, "quantity": 2}],
            "shipping": {"name": "Asha", "address": "12 MG Road", "city": "Noida"},
            "last_charged_cycle": "2024-W23",
        }
        conn = _mock_connection(row)
        with patch("psycopg.AsyncConnection.connect", AsyncMock(return_value=conn)):
            sub = await PostgresStore("postgresql://test").get_subscription("sub_1")
        assert sub.cadence == Cadence.WEEKLY
        assert sub.items[0].quantity == 2
        assert sub.shipping.city == "Noida"
        assert sub.last_charged_cycle == "2024-W23"

    @pytest.mark.asyncio
    async def test_get_missing_subscription(self):
        conn = _mock_connection(None)
        with patch("psycopg.AsyncConnection.connect", AsyncMock(return_value=conn)):
            assert await PostgresStore("postgresql://test").get_subscription("nope") is None

    @pytest.mark.asyncio
    async def test_reset_reports_rowcount(self):
        conn = _mock_connection(rowcount=1)
        with patch("psycopg.AsyncConnection.connect", AsyncMock(return_value=conn)):
            assert await PostgresStore("postgresql://test").reset(KEY)
        assert "status = 'failed'" in conn.execute.await_args.args[0]

    @pytest.mark.asyncio
    async def test_init_schema(self):
        conn = _mock_connection()
        with patch("psycopg.AsyncConnection.connect", AsyncMock(return_value=conn)):
            await PostgresStore("postgresql://test").init_schema()
        conn.execute.assert_awaited_once_with(SCHEMA_SQL)
