"""Storage contracts and implementations."""

from recurship.store.base import ChargeEventLog, FulfillmentLedger, SubscriptionStore
from recurship.store.memory import (
    InMemoryChargeEventLog,
    InMemoryFulfillmentLedger,
    InMemorySubscriptionStore,
)

__all__ = [
    "ChargeEventLog",
    "FulfillmentLedger",
    "SubscriptionStore",
    "InMemoryChargeEventLog",
    "InMemoryFulfillmentLedger",
    "InMemorySubscriptionStore",
]
