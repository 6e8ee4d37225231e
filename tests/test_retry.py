"""Tests for bounded exponential backoff."""

from __future__ import annotations

import pytest

from recurship.exceptions import PermanentGatewayFailure, TransientGatewayFailure
from recurship.retry import RetryPolicy, compute_delay, retry_async


class TestComputeDelay:
    def test_exponential_growth_without_jitter(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=60.0, jitter=0.0)
        assert [compute_delay(n, policy) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=0.0)
        assert compute_delay(10, policy) == 5.0

    def test_jitter_stays_within_band(self):
        policy = RetryPolicy(base_delay=2.0, max_delay=60.0, jitter=0.3)
        for _ in range(50):
            assert 1.4 <= compute_delay(0, policy) <= 2.6

    def test_retry_after_overrides_backoff(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=60.0, jitter=0.0)
        assert compute_delay(0, policy, retry_after=7.0) == 7.0

    def test_retry_after_is_capped(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0, jitter=0.0)
        assert compute_delay(0, policy, retry_after=120.0) == 10.0


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        calls = []

        async def fn():
            calls.append(1)
            return "ok"

        assert await retry_async(fn, RetryPolicy(max_attempts=3)) == "ok"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        outcomes = [TransientGatewayFailure("503"), TransientGatewayFailure("503"), "ok"]
        sleeps = []

        async def fn():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        async def fake_sleep(delay):
            sleeps.append(delay)

        policy = RetryPolicy(max_attempts=3, base_delay=1.0, jitter=0.0)
        assert await retry_async(fn, policy, sleep=fake_sleep) == "ok"
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_raises_after_attempt_ceiling(self):
        calls = []

        async def fn():
            calls.append(1)
            raise TransientGatewayFailure("timeout")

        async def fake_sleep(delay):
            pass

        with pytest.raises(TransientGatewayFailure):
            await retry_async(fn, RetryPolicy(max_attempts=4), sleep=fake_sleep)
        assert len(calls) == 4

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_failure(self):
        failures = [TransientGatewayFailure(f"HTTP 503 #{n}") for n in range(3)]
        sleeps = []

        async def fn():
            raise failures.pop(0)

        async def fake_sleep(delay):
            sleeps.append(delay)

        with pytest.raises(TransientGatewayFailure, match="HTTP 503 #2"):
            await retry_async(fn, RetryPolicy(max_attempts=3, jitter=0.0), sleep=fake_sleep)
        assert len(sleeps) == 2
        assert failures == []

    @pytest.mark.asyncio
    async def test_permanent_failure_not_retried(self):
        calls = []

        async def fn():
            calls.append(1)
            raise PermanentGatewayFailure("422")

        with pytest.raises(PermanentGatewayFailure):
            await retry_async(fn, RetryPolicy(max_attempts=4))
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_honors_retry_after_hint(self):
        outcomes = [TransientGatewayFailure("429", retry_after=3.0), "ok"]
        sleeps = []

        async def fn():
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        async def fake_sleep(delay):
            sleeps.append(delay)

        await retry_async(fn, RetryPolicy(max_attempts=2, jitter=0.0), sleep=fake_sleep)
        assert sleeps == [3.0]
