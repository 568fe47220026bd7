"""Chunked, idempotent candle persistence with extent maintenance."""

import asyncio
import sqlite3
from collections.abc import Awaitable, Callable

from backfill.data.store import CandleStore
from backfill.exceptions import PersistenceError
from backfill.logging import get_logger
from backfill.models import Candle, SaveResult, Timeframe

logger = get_logger(__name__)


class BatchPersister:
    """Writes candles in chunks and keeps the symbol/timeframe extent current.

    Each chunk is one upsert transaction. A chunk that fails at the database
    level (locked, disk I/O) is retried with exponential backoff; after the
    last attempt PersistenceError is raised. Earlier chunks stay written and
    the extent is updated for them before the error propagates.

    Usage:
        persister = BatchPersister(store)
        result = await persister.save("BTCUSDT", Timeframe.H1, candles)
    """

    def __init__(
        self,
        store: CandleStore,
        chunk_size: int = 5000,
        max_attempts: int = 3,
        retry_base_delay: float = 0.5,
        recompute_threshold: int = 10_000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._chunk_size = chunk_size
        self._max_attempts = max_attempts
        self._base_delay = retry_base_delay
        self._recompute_threshold = recompute_threshold
        self._sleep = sleep

    async def save(
        self, symbol: str, timeframe: Timeframe, candles: list[Candle]
    ) -> SaveResult:
        """Upsert candles and update the extent.

        Returns the summed SaveResult across chunks. Saving the same candles
        twice yields new_count=0 the second time and leaves the table
        unchanged.
        """
        if not candles:
            return SaveResult()

        total = SaveResult()
        committed: list[Candle] = []
        for offset in range(0, len(candles), self._chunk_size):
            chunk = candles[offset : offset + self._chunk_size]
            try:
                total = total + await self._save_chunk(symbol, timeframe, chunk)
            except PersistenceError:
                # Earlier chunks are already committed
                if committed:
                    await self._update_extent(symbol, timeframe, committed, total.new_count)
                raise
            committed.extend(chunk)

        await self._update_extent(symbol, timeframe, candles, total.new_count)

        logger.info(
            "candles_saved",
            symbol=symbol,
            timeframe=timeframe.value,
            total=len(candles),
            new=total.new_count,
            updated=total.updated_count,
            failed=total.failed_count,
        )
        return total

    async def _save_chunk(
        self, symbol: str, timeframe: Timeframe, chunk: list[Candle]
    ) -> SaveResult:
        for attempt in range(self._max_attempts):
            try:
                return await self._store.upsert_candles(symbol, timeframe, chunk)
            except sqlite3.Error as e:
                if attempt == self._max_attempts - 1:
                    logger.error(
                        "chunk_save_failed_permanently",
                        symbol=symbol,
                        timeframe=timeframe.value,
                        chunk_size=len(chunk),
                        attempts=self._max_attempts,
                        error=str(e),
                    )
                    raise PersistenceError(
                        f"Failed to save {len(chunk)} candles for "
                        f"{symbol} {timeframe.value}: {e}"
                    ) from e

                delay = self._base_delay * (2**attempt)
                logger.warning(
                    "chunk_save_retry",
                    attempt=attempt + 1,
                    max_attempts=self._max_attempts,
                    delay=delay,
                    error=str(e),
                )
                await self._sleep(delay)

        return SaveResult()  # Unreachable, but satisfies type checker

    async def _update_extent(
        self,
        symbol: str,
        timeframe: Timeframe,
        candles: list[Candle],
        new_count: int,
    ) -> None:
        if new_count == 0:
            extent = await self._store.get_extent(symbol, timeframe)
            if extent is not None and not extent.is_empty:
                return
            await self._store.recompute_extent(symbol, timeframe)
            return

        if new_count > self._recompute_threshold:
            await self._store.recompute_extent(symbol, timeframe)
            return

        open_times = [c.open_time_ms for c in candles]
        await self._store.apply_extent_delta(
            symbol, timeframe, min(open_times), max(open_times), new_count
        )
