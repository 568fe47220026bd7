"""Shared request-weight pacing for the upstream API.

Binance charges every request a weight and enforces a limit per rolling
one-minute window. WeightBudgetTracker keeps a local estimate of the weight
used in the current window and makes callers wait before a request that
would overrun it. The upstream's own counter (x-mbx-used-weight-1m) always
wins: observe() overwrites the local estimate with it.

State is in-memory only and lost on restart. The upstream enforces the real
limit; this is advisory pacing.

One instance is shared by every job running in the process.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from backfill.logging import get_logger

logger = get_logger(__name__)


@dataclass
class WeightUsage:
    """Point-in-time view of the weight budget."""

    used: int
    limit: int
    resets_in_seconds: float


class WeightBudgetTracker:
    """Blocks callers until enough request weight is available.

    Args:
        limit: Maximum weight per window.
        window_seconds: Window length in seconds.
        clock: Monotonic time source in seconds (injectable for tests).
        sleep: Async sleep function (injectable for tests).
    """

    def __init__(
        self,
        limit: int = 6000,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._used = 0
        self._window_start = clock()
        self._lock = asyncio.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window_seconds(self) -> float:
        return self._window

    async def reserve(self, cost: int = 1) -> None:
        """Wait until `cost` fits in the current window, then debit it.

        Waiters queue on the lock, so a blocked caller also holds back the
        ones behind it until the window resets.
        """
        async with self._lock:
            self._maybe_reset()

            if cost > self._limit:
                # Can never fit: wait one full window, then force a reset
                logger.warning(
                    "weight_cost_exceeds_limit",
                    cost=cost,
                    limit=self._limit,
                    wait_seconds=self._window,
                )
                await self._sleep(self._window)
                self._reset()
            elif self._used + cost > self._limit:
                wait = max(0.0, self._window - (self._clock() - self._window_start))
                logger.warning(
                    "weight_limit_reached",
                    used=self._used,
                    cost=cost,
                    limit=self._limit,
                    wait_seconds=round(wait, 3),
                )
                await self._sleep(wait)
                self._reset()

            self._used += cost

    def observe(self, used_weight: int | None) -> None:
        """Overwrite the local counter with the upstream-reported usage."""
        if used_weight is None:
            return
        self._maybe_reset()
        self._used = used_weight
        logger.debug("weight_usage", used=self._used, limit=self._limit)

    def snapshot(self) -> WeightUsage:
        """Return current usage and seconds until the window resets."""
        self._maybe_reset()
        elapsed = self._clock() - self._window_start
        return WeightUsage(
            used=self._used,
            limit=self._limit,
            resets_in_seconds=max(0.0, self._window - elapsed),
        )

    def _maybe_reset(self) -> None:
        if self._clock() - self._window_start >= self._window:
            self._reset()

    def _reset(self) -> None:
        self._used = 0
        self._window_start = self._clock()
