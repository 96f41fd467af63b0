import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from scrapeflow.utils.errors import (
    CircuitOpenError,
    NotFoundError,
    RateLimitedError,
    TransientError,
    ValidationError,
    is_transient,
)
from scrapeflow.utils.retry import retry_async


async def no_sleep(delay: float) -> None:
    return None


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_retries_transient_errors_until_success(self):
        op = AsyncMock(side_effect=[TransientError("flaky"), TransientError("flaky"), "ok"])
        retries = []

        result = await retry_async(
            op,
            max_attempts=3,
            sleep=no_sleep,
            on_retry=lambda attempt, exc: retries.append(attempt),
        )

        assert result == "ok"
        assert op.await_count == 3
        assert retries == [1, 2]

    @pytest.mark.asyncio
    async def test_surfaces_last_transient_error_when_exhausted(self):
        op = AsyncMock(side_effect=TransientError("down"))

        with pytest.raises(TransientError):
            await retry_async(op, max_attempts=3, sleep=no_sleep)

        assert op.await_count == 3

    @pytest.mark.asyncio
    async def test_validation_errors_are_never_retried(self):
        op = AsyncMock(side_effect=ValidationError("bad"))

        with pytest.raises(ValidationError):
            await retry_async(op, max_attempts=5, sleep=no_sleep)

        assert op.await_count == 1

    @pytest.mark.asyncio
    async def test_backoff_is_exponential_and_capped(self):
        delays = []

        async def record(delay: float) -> None:
            delays.append(delay)

        op = AsyncMock(side_effect=TransientError("down"))
        with pytest.raises(TransientError):
            await retry_async(
                op, max_attempts=5, base_delay=1.0, max_delay=5.0, factor=2.0, sleep=record
            )

        assert delays == [1.0, 2.0, 4.0, 5.0]

    @pytest.mark.asyncio
    async def test_cancellation_is_not_retried(self):
        op = AsyncMock(side_effect=asyncio.CancelledError())

        with pytest.raises(asyncio.CancelledError):
            await retry_async(op, max_attempts=3, sleep=no_sleep)

        assert op.await_count == 1


class TestIsTransient:
    def test_network_and_timeout_errors_are_transient(self):
        assert is_transient(TransientError("x"))
        assert is_transient(TimeoutError())
        assert is_transient(ConnectionResetError())
        assert is_transient(httpx.ConnectError("refused"))

    def test_server_errors_are_transient_client_errors_are_not(self):
        request = httpx.Request("GET", "https://example.com")
        server = httpx.HTTPStatusError(
            "boom", request=request, response=httpx.Response(503, request=request)
        )
        client = httpx.HTTPStatusError(
            "nope", request=request, response=httpx.Response(404, request=request)
        )
        assert is_transient(server)
        assert not is_transient(client)

    def test_caller_facing_errors_are_not_transient(self):
        assert not is_transient(ValidationError("x"))
        assert not is_transient(NotFoundError("x"))
        assert not is_transient(RateLimitedError("x"))
        assert not is_transient(CircuitOpenError("x"))
        assert not is_transient(ValueError("x"))
