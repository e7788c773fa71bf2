"""Poll-with-backoff primitive used wherever the client waits on eventual visibility."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from aggregator_client.errors import FinalityTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(base: float, attempt: int, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter to prevent thundering herd."""
    delay = min(max_delay, base * (2 ** attempt))
    jitter = delay * 0.1 * random.random()
    return delay + jitter


async def wait_for(
    probe: Callable[[], Awaitable[Optional[T]]],
    *,
    timeout: Optional[float],
    interval: float = 0.5,
    max_interval: float = 2.0,
    backoff: float = 1.2,
    retry_on: Tuple[Type[BaseException], ...] = (),
    description: str = "condition",
) -> T:
    """
    Call ``probe`` until it returns something other than None.

    Exceptions in ``retry_on`` are treated as "not yet"; anything else
    propagates immediately. With ``timeout=None`` the wait is unbounded and
    only cancellation stops it.

    Raises:
        FinalityTimeoutError: the deadline passed first (chained to the last
            retryable exception, if any)
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    last_error: Optional[BaseException] = None
    poll_count = 0

    while True:
        try:
            result = await probe()
        except retry_on as exc:
            last_error = exc
            result = None
        if result is not None:
            if poll_count:
                logger.debug(f"{description} reached after {poll_count} polls")
            return result

        poll_count += 1
        wait_time = min(interval * (backoff ** min(poll_count, 10)), max_interval)
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                message = f"Timed out after {timeout}s waiting for {description}"
                logger.warning(message)
                raise FinalityTimeoutError(message) from last_error
            wait_time = min(wait_time, remaining)
        await asyncio.sleep(wait_time)
