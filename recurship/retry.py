"""Exponential backoff with jitter for gateway calls.

Retries only on ``TransientGatewayFailure`` (timeouts, connection errors,
429/5xx). Honors a provider ``Retry-After`` hint. Logs each retry attempt.
Permanent failures propagate on the first attempt.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from recurship.exceptions import TransientGatewayFailure

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry settings.

    Args:
        max_attempts: Total attempts including the first call.
        base_delay: Initial delay in seconds.
        max_delay: Maximum delay cap in seconds.
        jitter: Jitter factor (0.0-1.0). Adds randomness to prevent thundering herd.
    """

    max_attempts: int = 4
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.3


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    retry_after: float | None = None,
) -> float:
    """Compute delay with exponential backoff + jitter, respecting Retry-After."""
    if retry_after is not None:
        return max(0.0, min(retry_after, policy.max_delay))

    # Exponential backoff: base * 2^attempt
    delay = min(policy.base_delay * (2**attempt), policy.max_delay)

    jitter_amount = delay * policy.jitter
    delay += random.uniform(-jitter_amount, jitter_amount)

    return max(0.0, delay)


async def retry_async(
    fn: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    *,
    sleep: Sleep = asyncio.sleep,
    label: str = "",
) -> Any:
    """Await ``fn()`` until it succeeds or the attempt ceiling is reached.

    The last ``TransientGatewayFailure`` is re-raised after exhaustion.
    """
    attempts = max(1, policy.max_attempts)
    last_exception: TransientGatewayFailure | None = None
    for attempt in range(attempts):
        try:
            return await fn()
        except TransientGatewayFailure as e:
            if attempt == attempts - 1:
                raise
            last_exception = e
            delay = compute_delay(attempt, policy, e.retry_after)
            logger.warning(
                "Retry %d/%d for %s (%s), waiting %.1fs",
                attempt + 1,
                attempts - 1,
                label or getattr(fn, "__name__", "call"),
                e,
                delay,
            )
            await sleep(delay)
    # Should not reach here, but just in case
    raise last_exception  # type: ignore[misc]
