from unittest.mock import AsyncMock

import pytest

from scrapeflow.models.schedule import RetryPolicy
from scrapeflow.services.circuit_breaker import CircuitBreaker, CircuitState
from scrapeflow.services.rate_limiter import RateLimiter
from scrapeflow.services.resilience import ResilientCaller
from scrapeflow.utils.errors import CircuitOpenError, RateLimitedError, TransientError


def fast_policy(attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=attempts, initial_delay_ms=0, max_delay_ms=0, backoff_multiplier=1
    )


class TestResilientCaller:
    @pytest.mark.asyncio
    async def test_breaker_counts_a_retried_success_once(self, clock):
        breaker = CircuitBreaker("dep", min_requests=1, clock=clock)
        caller = ResilientCaller("dep", breaker=breaker, retry_policy=fast_policy())
        op = AsyncMock(side_effect=[TransientError("flaky"), "ok"])

        assert await caller.call(op) == "ok"
        stats = breaker.stats()
        assert stats["requests"] == 1
        assert stats["failures"] == 0

    @pytest.mark.asyncio
    async def test_rate_limit_is_checked_before_anything_runs(self, clock):
        limiter = RateLimiter(1, 60_000, clock=clock)
        caller = ResilientCaller(
            "dep", breaker=CircuitBreaker("dep", clock=clock), rate_limiter=limiter
        )
        op = AsyncMock(return_value=1)

        await caller.call(op)
        with pytest.raises(RateLimitedError):
            await caller.call(op)

        assert op.await_count == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_count_toward_opening(self, clock):
        breaker = CircuitBreaker("dep", min_requests=2, clock=clock)
        caller = ResilientCaller("dep", breaker=breaker, retry_policy=fast_policy(2))
        op = AsyncMock(side_effect=TransientError("down"))

        for _ in range(2):
            with pytest.raises(TransientError):
                await caller.call(op)

        assert breaker.state == CircuitState.OPEN
        assert op.await_count == 4
        with pytest.raises(CircuitOpenError):
            await caller.call(op)
        assert op.await_count == 4

    def test_for_dependency_uses_settings(self, settings):
        caller = ResilientCaller.for_dependency("warehouse", settings)

        assert caller.breaker.name == "warehouse"
        assert caller.retry_policy.max_attempts == settings.retry_max_attempts
        assert ResilientCaller.for_dependency("x", settings, retry=False).retry_policy is None
