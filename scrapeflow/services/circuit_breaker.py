import asyncio
import threading
import time
from collections import deque
from collections.abc import Callable, Coroutine
from enum import StrEnum
from typing import Any, TypeVar

import structlog

from scrapeflow.utils.errors import CircuitOpenError, ScrapeflowError

log = structlog.get_logger()

T = TypeVar("T")


class CircuitState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


_EVENTS = {
    CircuitState.OPEN: "circuit_opened",
    CircuitState.HALF_OPEN: "circuit_half_opened",
    CircuitState.CLOSED: "circuit_closed",
}

StateListener = Callable[[str, CircuitState, CircuitState], None]


def _counts_as_failure(exc: BaseException) -> bool:
    # Client-side errors say nothing about the health of the dependency.
    if isinstance(exc, ScrapeflowError):
        return exc.code not in {
            "VALIDATION_ERROR",
            "NOT_FOUND",
            "INVALID_STATE_TRANSITION",
            "INVALID_STATE",
            "STALE_UPDATE",
        }
    return True


class CircuitBreaker:
    """Rolling-window circuit breaker shared by every caller of one dependency.

    CLOSED: calls pass through and outcomes are recorded. Once at least
    ``min_requests`` outcomes fall inside ``window_ms`` and the failure share
    reaches ``error_threshold_pct`` the breaker OPENs.

    OPEN: calls fail with CircuitOpenError without touching the dependency
    until ``reset_timeout_ms`` has elapsed.

    HALF_OPEN: exactly one trial call is let through. Success closes the
    breaker, failure opens it again. Other callers keep failing fast while the
    trial is in flight.
    """

    def __init__(
        self,
        name: str,
        *,
        error_threshold_pct: float = 50.0,
        min_requests: int = 5,
        window_ms: int = 10_000,
        reset_timeout_ms: int = 30_000,
        clock: Callable[[], float] = time.monotonic,
        is_failure: Callable[[BaseException], bool] = _counts_as_failure,
    ):
        self.name = name
        self.error_threshold_pct = error_threshold_pct
        self.min_requests = max(1, min_requests)
        self._window = window_ms / 1000.0
        self._reset_timeout = reset_timeout_ms / 1000.0
        self._clock = clock
        self._is_failure = is_failure

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._outcomes: deque[tuple[float, bool]] = deque()
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._listeners: list[StateListener] = []
        self._rejected = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def on_state_change(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            self._prune(self._clock())
            total = len(self._outcomes)
            failures = sum(1 for _, ok in self._outcomes if not ok)
            return {
                "name": self.name,
                "state": str(self._state),
                "requests": total,
                "failures": failures,
                "error_pct": (failures / total * 100) if total else 0.0,
                "rejected": self._rejected,
            }

    def _prune(self, now: float) -> None:
        while self._outcomes and now - self._outcomes[0][0] > self._window:
            self._outcomes.popleft()

    def _set_state(self, new: CircuitState) -> tuple[CircuitState, CircuitState] | None:
        old = self._state
        if old == new:
            return None
        self._state = new
        if new == CircuitState.OPEN:
            self._opened_at = self._clock()
        if new == CircuitState.CLOSED:
            self._outcomes.clear()
        return old, new

    def _emit(self, change: tuple[CircuitState, CircuitState] | None) -> None:
        if change is None:
            return
        old, new = change
        if new == CircuitState.OPEN:
            log.error(_EVENTS[new], breaker=self.name, previous=str(old))
        else:
            log.info(_EVENTS[new], breaker=self.name, previous=str(old))
        for listener in self._listeners:
            listener(self.name, old, new)

    def _admit(self) -> bool:
        """Decide whether a call may proceed. Returns True for the half-open trial."""
        change = None
        try:
            with self._lock:
                if self._state == CircuitState.OPEN:
                    if self._clock() - self._opened_at < self._reset_timeout:
                        self._rejected += 1
                        raise CircuitOpenError(
                            f"Circuit {self.name} is open", breaker=self.name
                        )
                    change = self._set_state(CircuitState.HALF_OPEN)

                if self._state == CircuitState.HALF_OPEN:
                    if self._trial_in_flight:
                        self._rejected += 1
                        raise CircuitOpenError(
                            f"Circuit {self.name} is half-open, trial in progress",
                            breaker=self.name,
                        )
                    self._trial_in_flight = True
                    return True
                return False
        finally:
            self._emit(change)

    def _record(self, ok: bool, trial: bool) -> None:
        change = None
        with self._lock:
            now = self._clock()
            if trial:
                self._trial_in_flight = False
                change = self._set_state(CircuitState.CLOSED if ok else CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED:
                self._outcomes.append((now, ok))
                self._prune(now)
                total = len(self._outcomes)
                if not ok and total >= self.min_requests:
                    failures = sum(1 for _, good in self._outcomes if not good)
                    if failures / total * 100 >= self.error_threshold_pct:
                        change = self._set_state(CircuitState.OPEN)
        self._emit(change)

    def _abandon_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False

    async def call(
        self,
        fn: Callable[..., Coroutine[Any, Any, T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        trial = self._admit()
        try:
            result = await fn(*args, **kwargs)
        except asyncio.CancelledError:
            if trial:
                self._abandon_trial()
            raise
        except Exception as e:
            self._record(not self._is_failure(e), trial)
            raise
        self._record(True, trial)
        return result
