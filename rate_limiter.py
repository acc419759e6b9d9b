"""
rate_limiter.py — Minimum-Spacing Scheduler for the Mowen API
===============================================================
The open API tolerates roughly one call per second per key. Every call
that counts against that limit goes through ONE RateLimiter instance,
created once at startup and handed to every caller.

HOW IT WORKS:
    start = max(now, next_available)
    next_available = start + min_interval     ← reserved BEFORE awaiting
    sleep until start, then run the task

Because the slot is reserved synchronously (no await between reading and
advancing the cursor), concurrent callers on the same event loop can never
claim the same slot, and callers start in the order they called schedule().

    limiter = RateLimiter(min_interval=1.1)
    result = await limiter.schedule(client.create_note, body)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

logger = logging.getLogger("clipper.ratelimit")

T = TypeVar("T")


class RateLimiter:
    """Enforces a minimum interval between the START of consecutive tasks."""

    def __init__(
        self,
        min_interval: float = 1.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval cannot be negative")
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._next_available_time = 0.0

    def reserve(self) -> float:
        """
        Claim the next free slot and return how long to wait for it.

        Must not await anything: the read and the advance of the cursor
        happen in one synchronous step.
        """
        now = self._clock()
        start = max(now, self._next_available_time)
        self._next_available_time = start + self.min_interval
        return start - now

    async def schedule(self, task: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """
        Run `task(*args, **kwargs)` once its slot arrives.

        Exceptions from the task propagate to the caller; the slot stays used.
        """
        wait = self.reserve()
        if wait > 0:
            logger.debug(f"Rate limit: waiting {wait:.2f}s")
            await self._sleep(wait)
        return await task(*args, **kwargs)
