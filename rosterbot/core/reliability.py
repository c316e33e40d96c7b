"""
Reliability helpers - bounded retry for calls to external services.

RetryManager runs an async callable up to a fixed number of attempts, sleeping
between attempts. The delay grows by ``exponential_base`` per attempt; with the
default base of 1.0 the backoff is fixed, which is what the report export uses.
Retry counts are tracked per function name for diagnostics.
"""

import asyncio
import random
from collections import defaultdict
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from .logger import ComponentLogger

T = TypeVar("T")

_logger = ComponentLogger("reliability")

class RetryManager:
    """Retry mechanism with configurable backoff and optional jitter."""

    def __init__(self, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.retry_attempts_count: Dict[str, int] = defaultdict(int)
        self._sleep = sleep
        self._logger = _logger

    async def retry_with_backoff(
        self,
        func: Callable[[], Awaitable[T]],
        max_attempts: int = 3,
        base_delay: float = 3.0,
        max_delay: float = 60.0,
        exponential_base: float = 1.0,
        jitter: bool = False,
        retry_on: tuple = (Exception,),
        exclude_on: tuple = (),
        on_retry: Optional[Callable[[int, BaseException, float], Awaitable[None]]] = None,
    ) -> T:
        """
        Execute ``func`` until it succeeds or attempts are exhausted.

        Args:
            func: Async callable taking no arguments
            max_attempts: Total number of attempts, including the first
            base_delay: Delay before the second attempt, in seconds
            max_delay: Upper bound for any single delay
            exponential_base: Delay multiplier per attempt (1.0 = fixed backoff)
            jitter: Whether to randomize each delay between 50% and 100%
            retry_on: Exceptions that trigger another attempt
            exclude_on: Exceptions that are re-raised immediately
            on_retry: Optional coroutine called as (attempt, error, delay)

        Returns:
            Result of the first successful call

        Raises:
            The last exception once every attempt has failed
        """
        func_name = getattr(func, "__name__", "unknown_function")

        for attempt in range(max_attempts):
            try:
                return await func()
            except exclude_on:
                raise
            except retry_on as e:
                if attempt == max_attempts - 1:
                    self._logger.warning("retry_exhausted",
                        function=func_name,
                        attempts=max_attempts,
                        error_type=type(e).__name__,
                        error_msg=str(e)[:200],
                    )
                    raise

                delay = min(base_delay * (exponential_base**attempt), max_delay)
                if jitter:
                    delay *= 0.5 + random.random() * 0.5

                if on_retry:
                    await on_retry(attempt + 1, e, delay)

                self.retry_attempts_count[func_name] += 1
                self._logger.debug("retry_scheduled",
                    attempt=attempt + 1,
                    delay_seconds=round(delay, 2),
                    exception=str(e)[:200],
                    function=func_name,
                )
                await self._sleep(delay)

        raise RuntimeError("retry_with_backoff called with max_attempts < 1")
