import asyncio

import asyncpg
import httpx


class ScrapeflowError(Exception):
    """Base exception for job orchestration and pipeline errors."""

    code = "SCRAPEFLOW_ERROR"
    retryable = False

    def __init__(self, message: str, *, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(ScrapeflowError):
    """Raised on bad input. Never retried."""

    code = "VALIDATION_ERROR"


class NotFoundError(ScrapeflowError):
    """Raised when a job, result or schedule does not exist."""

    code = "NOT_FOUND"


class InvalidStateTransition(ScrapeflowError):
    """Raised when a job lifecycle move is not an edge of the state machine."""

    code = "INVALID_STATE_TRANSITION"

    def __init__(
        self,
        message: str,
        *,
        current: str = "",
        target: str = "",
        details: dict | None = None,
    ):
        self.current = current
        self.target = target
        super().__init__(message, details=details)


class InvalidStateError(ScrapeflowError):
    """Raised when an operation needs a job in a different state."""

    code = "INVALID_STATE"


class StaleUpdateError(ScrapeflowError):
    """Raised by a job store when an update carries an outdated version."""

    code = "STALE_UPDATE"


class RateLimitedError(ScrapeflowError):
    """Raised when a rate limit window is exhausted."""

    code = "RATE_LIMITED"

    def __init__(
        self, message: str, *, retry_after_ms: int = 0, details: dict | None = None
    ):
        self.retry_after_ms = retry_after_ms
        super().__init__(message, details=details)


class CircuitOpenError(ScrapeflowError):
    """Raised when a circuit breaker rejects a call without invoking it."""

    code = "CIRCUIT_OPEN"

    def __init__(
        self, message: str, *, breaker: str = "", details: dict | None = None
    ):
        self.breaker = breaker
        super().__init__(message, details=details)


class TransientError(ScrapeflowError):
    """Raised for network, timeout, resource exhaustion or 5xx failures."""

    code = "TRANSIENT_ERROR"
    retryable = True


class CollectionError(ScrapeflowError):
    """Raised when a collection strategy fails for a non-transient reason."""

    code = "COLLECTION_ERROR"


class TransformError(ScrapeflowError):
    """Raised when a result cannot be turned into its storage representation."""

    code = "TRANSFORM_ERROR"


class PersistenceError(ScrapeflowError):
    """Raised when object storage or warehouse writes fail for good."""

    code = "PERSISTENCE_ERROR"


_NEVER_TRANSIENT = (
    ValidationError,
    NotFoundError,
    InvalidStateTransition,
    InvalidStateError,
    RateLimitedError,
    CircuitOpenError,
)


def is_transient(exc: BaseException) -> bool:
    """Classify an error as worth retrying."""
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, _NEVER_TRANSIENT):
        return False
    if isinstance(exc, ScrapeflowError):
        return exc.retryable
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500 or exc.response.status_code == 429
    if isinstance(exc, (httpx.TransportError, TimeoutError, ConnectionError, MemoryError)):
        return True
    if isinstance(exc, (asyncpg.PostgresConnectionError, asyncpg.TooManyConnectionsError)):
        return True
    return isinstance(exc, OSError)


def error_code(exc: BaseException) -> str:
    if isinstance(exc, ScrapeflowError):
        return exc.code
    return type(exc).__name__.upper()
