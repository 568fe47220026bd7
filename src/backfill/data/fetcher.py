"""Paginated kline fetch pipeline with weight pacing, retry and progress callbacks.

Walks a window FORWARD page by page: each page starts one millisecond after
the close time of the last candle received. Every attempt reserves request
weight first, and every response's used-weight header corrects the shared
budget.

Retry policy per page:
- Rate limited (429): base * 2^attempt + one full weight window; the
  upstream budget is treated as exhausted.
- Transient network failure: base * 2^attempt.
- Anything else: no retry.
Retries are capped at max_attempts; the last error is re-raised.
"""

import asyncio
from collections.abc import Awaitable, Callable

from backfill.exceptions import JobCancelledError, RateLimitError, TransientNetworkError
from backfill.exchange.client import KlineClient
from backfill.exchange.weight import WeightBudgetTracker
from backfill.logging import get_logger
from backfill.models import Candle, Timeframe

logger = get_logger(__name__)

MAX_PAGE_LIMIT = 1500
KLINES_WEIGHT = 1

ProgressCallback = Callable[[float, int], Awaitable[None]]


class RetryingFetcher:
    """Fetches klines from the upstream with pacing and retry.

    Usage:
        fetcher = RetryingFetcher(client, weight_tracker)
        candles = await fetcher.fetch_range("BTCUSDT", Timeframe.H1, start, end, on_progress)
    """

    def __init__(
        self,
        client: KlineClient,
        weight_tracker: WeightBudgetTracker,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        page_limit: int = MAX_PAGE_LIMIT,
        page_delay: float = 0.1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._weight = weight_tracker
        self._max_attempts = max_attempts
        self._base_delay = retry_base_delay
        self._page_limit = min(page_limit, MAX_PAGE_LIMIT)
        self._page_delay = page_delay
        self._sleep = sleep

    # ──────────────────────────────────────────────
    # Public methods
    # ──────────────────────────────────────────────

    async def fetch_page(
        self,
        symbol: str,
        timeframe: Timeframe,
        start_ms: int,
        end_ms: int,
        limit: int = MAX_PAGE_LIMIT,
    ) -> list[Candle]:
        """Fetch a single page of up to `limit` candles, retrying recoverable errors."""
        limit = min(limit, self._page_limit)

        for attempt in range(self._max_attempts):
            await self._weight.reserve(KLINES_WEIGHT)
            try:
                page = await self._client.fetch_klines(
                    symbol, timeframe, start_ms, end_ms, limit
                )
            except (RateLimitError, TransientNetworkError) as e:
                if attempt == self._max_attempts - 1:
                    logger.error(
                        "fetch_failed_permanently",
                        symbol=symbol,
                        timeframe=timeframe.value,
                        error=str(e),
                        attempts=self._max_attempts,
                    )
                    raise

                delay = self._base_delay * (2**attempt)
                if isinstance(e, RateLimitError):
                    delay += self._weight.window_seconds
                    logger.warning(
                        "rate_limit_exceeded",
                        attempt=attempt + 1,
                        max_attempts=self._max_attempts,
                        delay=delay,
                    )
                else:
                    logger.warning(
                        "fetch_retry",
                        attempt=attempt + 1,
                        max_attempts=self._max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                await self._sleep(delay)
                continue

            self._weight.observe(page.used_weight)
            return page.candles

        return []  # Unreachable, but satisfies type checker

    async def fetch_range(
        self,
        symbol: str,
        timeframe: Timeframe,
        start_ms: int,
        end_ms: int,
        on_progress: ProgressCallback | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> list[Candle]:
        """Fetch every candle with open time in [start_ms, end_ms].

        After each page, awaits on_progress(percent, cumulative_count). The
        percentage is measured against an estimate of (end - start) / interval
        candles, so it can undershoot or overshoot near the end of the range;
        it is capped at 100.

        should_cancel is checked before and after every page. When it returns
        True the candles gathered for this range are discarded and
        JobCancelledError is raised.
        """
        interval = timeframe.interval_ms
        estimated = max(1, (end_ms - start_ms) // interval + 1)
        candles: list[Candle] = []
        cursor = start_ms

        logger.info(
            "range_fetch_started",
            symbol=symbol,
            timeframe=timeframe.value,
            start_ms=start_ms,
            end_ms=end_ms,
            estimated_candles=estimated,
        )

        while cursor <= end_ms:
            if should_cancel is not None and should_cancel():
                raise JobCancelledError("Cancelled before page request")

            page = await self.fetch_page(symbol, timeframe, cursor, end_ms, self._page_limit)

            if should_cancel is not None and should_cancel():
                raise JobCancelledError("Cancelled during page request")

            page = [c for c in page if start_ms <= c.open_time_ms <= end_ms]
            if not page:
                break

            candles.extend(page)

            if on_progress is not None:
                percent = min(100.0, len(candles) / estimated * 100)
                await on_progress(percent, len(candles))

            next_cursor = page[-1].close_time_ms + 1
            if next_cursor <= cursor:
                break  # No progress guard

            cursor = next_cursor
            if cursor <= end_ms and self._page_delay > 0:
                await self._sleep(self._page_delay)

        logger.info(
            "range_fetch_complete",
            symbol=symbol,
            timeframe=timeframe.value,
            records_fetched=len(candles),
        )
        return candles
