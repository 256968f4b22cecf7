"""
Retry Policy - backoff schedule for transient failures.

Used by the media server client (fixed delay between attempts) and by the
WebSocket client's reconnect loop (exponential backoff with a cap).
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from ..logging_utils import get_module_logger

logger = get_module_logger("RetryPolicy")

T = TypeVar("T")


class RetryPolicy:
    """
    Exponential backoff with an optional cap and jitter.

    Usage:
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, backoff_factor=1.0)

        paths = await policy.call(
            lambda: client.list_paths(),
            retry_on=(aiohttp.ClientConnectionError, asyncio.TimeoutError),
        )
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        backoff_factor: float = 2.0,
        jitter: float = 0.0,
    ):
        """
        Args:
            max_attempts: Maximum number of attempts (including first try)
            base_delay: Delay before the first retry (seconds)
            max_delay: Upper bound on any single delay (seconds)
            backoff_factor: Multiplier applied per retry (1.0 = fixed delay)
            jitter: Random jitter factor (0.1 = +/-10%)
        """
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.backoff_factor = backoff_factor
        self.jitter = jitter

    def backoff(self, retry_index: int) -> float:
        """Delay before retry number ``retry_index`` (0 = first retry)."""
        delay = min(self.base_delay * (self.backoff_factor ** max(retry_index, 0)), self.max_delay)
        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay += random.uniform(-jitter_range, jitter_range)
        return max(0.0, delay)

    def get_delay(self, attempt: int) -> float:
        """Delay before 1-based ``attempt``; the first attempt never waits."""
        if attempt <= 1:
            return 0.0
        return self.backoff(attempt - 2)

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        on_retry: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        """Run ``operation`` until it succeeds or attempts are exhausted.

        Only exceptions matching ``retry_on`` are retried; the last one is
        re-raised once ``max_attempts`` is reached.
        """
        attempt = 1
        while True:
            try:
                return await operation()
            except retry_on as e:
                if attempt >= self.max_attempts:
                    raise
                attempt += 1
                delay = self.get_delay(attempt)
                if on_retry:
                    on_retry(attempt, e)
                logger.debug(
                    "Retry attempt %d/%d after %.2fs delay (%s)",
                    attempt, self.max_attempts, delay, e,
                )
                await asyncio.sleep(delay)


MEDIA_SERVER_RETRY_POLICY = RetryPolicy(
    max_attempts=5,
    base_delay=1.0,
    max_delay=1.0,
    backoff_factor=1.0,
)

RECONNECT_POLICY = RetryPolicy(
    max_attempts=10,
    base_delay=1.0,
    max_delay=30.0,
    backoff_factor=2.0,
)
