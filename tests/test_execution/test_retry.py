"""Tests for RetryPolicy backoff and transient error classification."""

import asyncio
from unittest.mock import AsyncMock, patch

import ccxt.async_support as ccxt_async
import pytest

from tradetree.exceptions import (
    ExecutionError,
    StoreUnavailableError,
    TransientExecutionError,
)
from tradetree.execution.retry import RetryPolicy, is_transient_error


class TestClassification:
    @pytest.mark.parametrize(
        "exc",
        [
            TransientExecutionError("busy"),
            StoreUnavailableError("locked"),
            ccxt_async.NetworkError("reset"),
            asyncio.TimeoutError(),
            ConnectionResetError(),
            RuntimeError("Gateway timeout from upstream"),
        ],
    )
    def test_transient(self, exc: Exception) -> None:
        assert is_transient_error(exc)

    @pytest.mark.parametrize(
        "exc",
        [ExecutionError("insufficient margin"), ValueError("bad symbol")],
    )
    def test_permanent(self, exc: Exception) -> None:
        assert not is_transient_error(exc)


class TestRetryPolicy:
    def test_delays_double(self) -> None:
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in (1, 2)] == [5.0, 10.0]

    @pytest.mark.asyncio()
    async def test_succeeds_after_transient_failures(self) -> None:
        operation = AsyncMock(
            side_effect=[TransientExecutionError("busy"), TransientExecutionError("busy"), "ok"]
        )
        policy = RetryPolicy(max_attempts=3)

        with patch("tradetree.execution.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            result, attempts = await policy.call(operation, name="test")

        assert result == "ok"
        assert attempts == 3
        assert [c.args[0] for c in sleep.await_args_list] == [5.0, 10.0]

    @pytest.mark.asyncio()
    async def test_gives_up_after_max_attempts(self) -> None:
        operation = AsyncMock(side_effect=TransientExecutionError("busy"))
        policy = RetryPolicy(max_attempts=3)

        with patch("tradetree.execution.retry.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(TransientExecutionError) as exc_info:
                await policy.call(operation)

        assert operation.await_count == 3
        assert exc_info.value.attempts == 3

    @pytest.mark.asyncio()
    async def test_permanent_error_is_not_retried(self) -> None:
        operation = AsyncMock(side_effect=ExecutionError("rejected"))
        policy = RetryPolicy(max_attempts=3)

        with patch("tradetree.execution.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
            with pytest.raises(ExecutionError):
                await policy.call(operation)

        assert operation.await_count == 1
        sleep.assert_not_awaited()
