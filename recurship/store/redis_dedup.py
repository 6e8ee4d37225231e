"""Charge-event dedup — Redis-based seen-set.

Contract:
- Tracks provider charge ids with SET NX (atomic check-and-mark)
- Key pattern: charge:seen:{charge_id}
- Optional TTL; 0 keeps ids forever
- If Redis is down, falls back to allowing (fail-open for availability).
  The fulfillment ledger still prevents a second shipment for the cycle.
"""

from __future__ import annotations

import logging

import redis.asyncio as redis

from recurship.models import ChargeEvent

logger = logging.getLogger(__name__)

# Key prefix for charge dedup
_KEY_PREFIX = "charge:seen"


class RedisChargeEventLog:
    """ChargeEventLog backed by Redis SET NX."""

    def __init__(self, client: redis.Redis, ttl_seconds: int = 0) -> None:
        self._redis = client
        self._ttl = ttl_seconds or None

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = 0) -> RedisChargeEventLog:
        return cls(redis.from_url(redis_url, decode_responses=True), ttl_seconds)

    async def record(self, event: ChargeEvent) -> bool:
        """Return True if this charge id has not been seen before."""
        key = f"{_KEY_PREFIX}:{event.charge_id}"
        try:
            # SET NX returns True if key was set (new), None if key already existed (dup)
            was_set = await self._redis.set(
                key, event.subscription_id, nx=True, ex=self._ttl
            )
        except redis.RedisError:
            logger.warning(
                "Redis unavailable for charge dedup — allowing %s/%s",
                event.subscription_id,
                event.charge_id,
                exc_info=True,
            )
            return True
        if not was_set:
            logger.info("Duplicate charge event: %s/%s", event.subscription_id, event.charge_id)
            return False
        return True

    async def has_seen(self, charge_id: str) -> bool:
        try:
            return bool(await self._redis.exists(f"{_KEY_PREFIX}:{charge_id}"))
        except redis.RedisError:
            logger.warning("Redis unavailable for charge lookup: %s", charge_id, exc_info=True)
            return False

    async def close(self) -> None:
        await self._redis.aclose()
