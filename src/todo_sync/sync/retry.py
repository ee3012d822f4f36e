"""Retry and timeout handling for remote store calls."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .errors import NetworkError, RateLimitError, is_retryable


logger = logging.getLogger(__name__)


class RetryHandler:
    """Handles timeouts and exponential backoff for remote operations.

    Every attempt is bounded by ``timeout`` seconds; a timeout counts as a
    network failure. Retryable failures are retried after 1, 2, 4, ...
    seconds (scaled by ``base_delay`` and capped at ``max_delay``) until
    ``max_attempts`` attempts have been made.
    """

    def __init__(self, max_attempts: int = 5, base_delay: float = 1.0,
                 max_delay: float = 30.0, timeout: Optional[float] = 10.0,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        """Initialize retry handler.

        Args:
            max_attempts: Total attempts, including the first one
            base_delay: Delay before the first retry, in seconds
            max_delay: Upper bound for any single delay
            timeout: Per-attempt timeout in seconds, None for no timeout
            sleep: Coroutine used to wait between attempts
        """
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._sleep = sleep

    def delay_for(self, attempt: int, error: Optional[Exception] = None) -> float:
        """Backoff before retry number ``attempt`` (0-based)."""
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if isinstance(error, RateLimitError) and error.retry_after:
            delay = min(max(delay, error.retry_after), self.max_delay)
        return delay

    async def execute_with_retry(self, coro, *args, **kwargs):
        """Execute a coroutine function with timeout and exponential backoff.

        Args:
            coro: Coroutine function to execute
            *args: Positional arguments for the coroutine
            **kwargs: Keyword arguments for the coroutine

        Returns:
            Result of the coroutine

        Raises:
            NetworkError: if every attempt failed with a retryable error
            The original exception for non-retryable failures
        """
        last_exception = None

        for attempt in range(self.max_attempts):
            try:
                if self.timeout is None:
                    return await coro(*args, **kwargs)
                return await asyncio.wait_for(coro(*args, **kwargs), timeout=self.timeout)
            except asyncio.TimeoutError:
                last_exception = NetworkError(f"Operation timed out after {self.timeout}s")
            except Exception as e:
                if not is_retryable(e):
                    logger.error(f"Non-retryable error: {e}")
                    raise
                last_exception = e

            if attempt < self.max_attempts - 1:
                delay = self.delay_for(attempt, last_exception)
                logger.warning(f"Attempt {attempt + 1} failed, retrying in {delay}s: {last_exception}")
                await self._sleep(delay)
            else:
                logger.error(f"All {self.max_attempts} attempts failed")

        if isinstance(last_exception, NetworkError):
            raise last_exception
        raise NetworkError(str(last_exception)) from last_exception
