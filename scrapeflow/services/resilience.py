from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

from scrapeflow.config.settings import Settings
from scrapeflow.models.schedule import RetryPolicy
from scrapeflow.services.circuit_breaker import CircuitBreaker
from scrapeflow.services.rate_limiter import RateLimiter
from scrapeflow.utils.retry import retry_async


T = TypeVar("T")

class ResilientCaller:
    """Rate limit -> circuit breaker -> retry, around one outward dependency.

    The rate limiter is consulted once per logical call. The breaker sees the
    outcome of the whole retry sequence, so a call that succeeds on its third
    attempt counts as one success.
    """

    def __init__(
        self,
        name: str,
        *,
        breaker: CircuitBreaker,
        rate_limiter: RateLimiter | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.name = name
        self.breaker = breaker
        self.rate_limiter = rate_limiter
        self.retry_policy = retry_policy

    @classmethod
    def for_dependency(
        cls,
        name: str,
        settings: Settings,
        *,
        rate_limiter: RateLimiter | None = None,
        retry: bool = True,
    ) -> "ResilientCaller":
        breaker = CircuitBreaker(
            name,
            error_threshold_pct=settings.breaker_error_threshold_pct,
            min_requests=settings.breaker_min_requests,
            window_ms=settings.breaker_window_ms,
            reset_timeout_ms=settings.breaker_reset_timeout_ms,
        )
        policy = None
        if retry:
            policy = RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                initial_delay_ms=settings.retry_base_delay_ms,
                max_delay_ms=settings.retry_max_delay_ms,
                backoff_multiplier=settings.retry_factor,
            )
        return cls(name, breaker=breaker, rate_limiter=rate_limiter, retry_policy=policy)

    async def call(
        self,
        fn: Callable[..., Coroutine[Any, Any, T]],
        *args: Any,
        on_retry: Callable[[int, BaseException], None] | None = None,
        **kwargs: Any,
    ) -> T:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()

        if self.retry_policy is None:
            return await self.breaker.call(fn, *args, **kwargs)

        policy = self.retry_policy
        return await self.breaker.call(
            retry_async,
            fn,
            *args,
            max_attempts=policy.max_attempts,
            base_delay=policy.initial_delay_ms / 1000.0,
            max_delay=policy.max_delay_ms / 1000.0,
            factor=policy.backoff_multiplier,
            on_retry=on_retry,
            **kwargs,
        )
