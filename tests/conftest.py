"""Shared fixtures for the recurship test suite.

Gateways are in-memory fakes; stores are the in-memory implementations.
Retry sleeps are recorded instead of awaited.
"""

from __future__ import annotations

import pytest

from fakes import FakeShippingGateway, make_subscription
from recurship.dispatcher import FulfillmentDispatcher
from recurship.retry import RetryPolicy
from recurship.store.memory import (
    InMemoryChargeEventLog,
    InMemoryFulfillmentLedger,
    InMemorySubscriptionStore,
)


@pytest.fixture
def subscription_store() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore([make_subscription("sub_1")])


@pytest.fixture
def ledger() -> InMemoryFulfillmentLedger:
    return InMemoryFulfillmentLedger()


@pytest.fixture
def charge_log() -> InMemoryChargeEventLog:
    return InMemoryChargeEventLog()


@pytest.fixture
def shipping() -> FakeShippingGateway:
    return FakeShippingGateway()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def dispatcher(subscription_store, ledger, shipping, sleeps) -> FulfillmentDispatcher:
    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    return FulfillmentDispatcher(
        subscription_store,
        ledger,
        shipping,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=10.0, jitter=0.0),
        io_timeout=2.0,
        sleep=fake_sleep,
    )
