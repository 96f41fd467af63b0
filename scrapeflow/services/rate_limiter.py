import threading
import time
from collections.abc import Callable

import structlog

from scrapeflow.utils.errors import RateLimitedError, ValidationError

log = structlog.get_logger()


class RateLimiter:
    """Fixed-window rate limiting that fails fast instead of queuing."""

    def __init__(
        self,
        max_requests: int,
        window_ms: int,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_requests <= 0 or window_ms <= 0:
            raise ValidationError("Rate limit requests and window must be positive")
        self.name = name
        self.max_requests = max_requests
        self._window = window_ms / 1000.0
        self._clock = clock
        self._lock = threading.Lock()
        self._window_start = clock()
        self._count = 0

    def _roll(self, now: float) -> None:
        if now - self._window_start >= self._window:
            elapsed_windows = int((now - self._window_start) // self._window)
            self._window_start += elapsed_windows * self._window
            self._count = 0

    def acquire(self) -> None:
        """Take one slot in the current window or raise RateLimitedError."""
        with self._lock:
            now = self._clock()
            self._roll(now)
            if self._count >= self.max_requests:
                retry_after = self._window_start + self._window - now
                log.warning(
                    "rate_limited",
                    limiter=self.name,
                    max_requests=self.max_requests,
                    retry_after_ms=int(retry_after * 1000),
                )
                raise RateLimitedError(
                    f"Rate limit exceeded for {self.name}",
                    retry_after_ms=max(0, int(retry_after * 1000)),
                )
            self._count += 1

    def remaining(self) -> int:
        with self._lock:
            self._roll(self._clock())
            return self.max_requests - self._count

    def reset(self) -> None:
        """Start a fresh window."""
        with self._lock:
            self._window_start = self._clock()
            self._count = 0
