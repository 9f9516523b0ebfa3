"""Process-wide throttle for outbound model calls.

Every stage that talks to a model (title pre-filter, validator, concepts
indexer, tag weaver) awaits ``RateLimiter.wait_for_slot()`` first. One
limiter is created per process and passed explicitly to each call site.

Two rules are enforced:
- consecutive grants are at least ``min_interval`` seconds apart
- once ``per_minute_cap`` grants have been counted, the caller is held for a
  full cool-down and the counter starts over

The cool-down is an over-approximation, not a sliding window.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from .config import (
    MIN_REQUEST_INTERVAL_SECONDS,
    RATE_LIMIT_COOLDOWN_SECONDS,
    REQUESTS_PER_MINUTE_LIMIT,
)

log = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class RateLimiter:
    """Spacing plus per-minute cap, shared by all model calls.

    Args:
        min_interval: Minimum seconds between two grants.
        per_minute_cap: Grants counted before a cool-down is forced.
        cooldown: Seconds to hold the caller once the cap is reached.
        clock: Monotonic clock in seconds (injectable for tests).
        sleep: Coroutine used to wait (injectable for tests).
        on_cooldown: Optional callback invoked with the cool-down length,
            so the host can tell the user why nothing is happening.
    """

    def __init__(
        self,
        min_interval: float = MIN_REQUEST_INTERVAL_SECONDS,
        per_minute_cap: int = REQUESTS_PER_MINUTE_LIMIT,
        cooldown: float = RATE_LIMIT_COOLDOWN_SECONDS,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
        on_cooldown: Callable[[float], None] | None = None,
    ) -> None:
        if per_minute_cap < 1:
            raise ValueError("per_minute_cap must be at least 1")
        self.min_interval = min_interval
        self.per_minute_cap = per_minute_cap
        self.cooldown = cooldown
        self._clock = clock
        self._sleep = sleep
        self.on_cooldown = on_cooldown

        self._last_grant: float | None = None
        self._count = 0
        # asyncio.Lock wakes waiters in FIFO order
        self._lock = asyncio.Lock()

    @property
    def requests_in_window(self) -> int:
        return self._count

    async def wait_for_slot(self) -> None:
        """Suspend the caller until another model call is allowed."""
        async with self._lock:
            self._count += 1

            if self._count >= self.per_minute_cap:
                log.info("Approaching rate limit, waiting %.0fs...", self.cooldown)
                if self.on_cooldown:
                    self.on_cooldown(self.cooldown)
                await self._sleep(self.cooldown)
                self._count = 0

            if self._last_grant is not None:
                elapsed = self._clock() - self._last_grant
                if elapsed < self.min_interval:
                    await self._sleep(self.min_interval - elapsed)

            self._last_grant = self._clock()
