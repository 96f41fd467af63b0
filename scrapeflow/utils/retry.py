import asyncio
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

import structlog

from scrapeflow.utils.errors import is_transient

log = structlog.get_logger()

T = TypeVar("T")


async def retry_async(
    fn: Callable[..., Coroutine[Any, Any, T]],
    *args: Any,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    factor: float = 2.0,
    retry_if: Callable[[BaseException], bool] = is_transient,
    on_retry: Callable[[int, BaseException], None] | None = None,
    sleep: Callable[[float], Coroutine[Any, Any, None]] = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """Retry an async function with exponential backoff.

    Only errors accepted by ``retry_if`` are retried; anything else, and the
    last transient error once ``max_attempts`` is spent, propagates unchanged.
    Cancellation is never retried.
    """
    attempts = max(1, max_attempts)

    for attempt in range(attempts):
        try:
            return await fn(*args, **kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if attempt == attempts - 1 or not retry_if(e):
                raise
            delay = min(base_delay * (factor**attempt), max_delay)
            log.warning(
                "retry_attempt",
                attempt=attempt + 1,
                max_attempts=attempts,
                delay=delay,
                error=str(e),
            )
            if on_retry is not None:
                on_retry(attempt + 1, e)
            await sleep(delay)

    raise AssertionError("unreachable")
