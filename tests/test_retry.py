"""Tests for timeout and backoff handling."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from todo_sync.sync.errors import (
    AuthenticationError,
    ErrorType,
    NetworkError,
    RateLimitError,
    classify_error,
    is_retryable,
    user_message,
)
from todo_sync.sync.retry import RetryHandler


def make_handler(**kwargs):
    sleep = AsyncMock()
    kwargs.setdefault("timeout", 1.0)
    return RetryHandler(sleep=sleep, **kwargs), sleep


class TestRetryHandler:
    """Test retry behavior."""

    async def test_success_first_try(self):
        handler, sleep = make_handler()
        operation = AsyncMock(return_value="ok")

        assert await handler.execute_with_retry(operation, 1, key="v") == "ok"
        operation.assert_awaited_once_with(1, key="v")
        sleep.assert_not_awaited()

    async def test_retries_network_errors_with_backoff(self):
        handler, sleep = make_handler(max_attempts=4)
        operation = AsyncMock(side_effect=[NetworkError("down"), NetworkError("down"), "ok"])

        assert await handler.execute_with_retry(operation) == "ok"
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]

    async def test_gives_up_after_max_attempts(self):
        handler, sleep = make_handler(max_attempts=5)
        operation = AsyncMock(side_effect=NetworkError("down"))

        with pytest.raises(NetworkError):
            await handler.execute_with_retry(operation)
        assert operation.await_count == 5
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0, 4.0, 8.0]

    async def test_non_retryable_raised_immediately(self):
        handler, sleep = make_handler()
        operation = AsyncMock(side_effect=AuthenticationError("401"))

        with pytest.raises(AuthenticationError):
            await handler.execute_with_retry(operation)
        assert operation.await_count == 1

    async def test_timeout_counts_as_network_error(self):
        handler, _ = make_handler(max_attempts=2, timeout=0.01)

        async def hang():
            await asyncio.sleep(1)

        with pytest.raises(NetworkError):
            await handler.execute_with_retry(hang)

    def test_delay_is_capped_and_honors_retry_after(self):
        handler = RetryHandler(base_delay=1.0, max_delay=30.0)

        assert handler.delay_for(10) == 30.0
        assert handler.delay_for(0, RateLimitError(retry_after=12)) == 12
        assert handler.delay_for(0, RateLimitError(retry_after=120)) == 30.0


class TestErrorClassification:
    """Test mapping failures to types and messages."""

    def test_sync_errors_carry_their_type(self):
        assert classify_error(NetworkError()) is ErrorType.NETWORK
        assert user_message(AuthenticationError()) == "sign-in required"
        assert user_message(NetworkError()) == "offline"

    def test_builtin_errors(self):
        assert classify_error(asyncio.TimeoutError()) is ErrorType.NETWORK
        assert classify_error(ConnectionResetError()) is ErrorType.NETWORK
        assert classify_error(RuntimeError("quota exceeded")) is ErrorType.QUOTA
        assert classify_error(RuntimeError("???")) is ErrorType.UNKNOWN
        assert user_message(None) == "sync failed"

    def test_retryable(self):
        assert is_retryable(NetworkError())
        assert is_retryable(RateLimitError())
        assert not is_retryable(AuthenticationError())
        assert not is_retryable(ValueError("bad"))
