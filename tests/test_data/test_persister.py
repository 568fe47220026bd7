"""Tests for CandleStore upserts and BatchPersister accounting."""

import dataclasses
import sqlite3
from unittest.mock import AsyncMock, MagicMock

import pytest

from backfill.data.persister import BatchPersister
from backfill.data.store import CandleStore
from backfill.exceptions import PersistenceError
from backfill.models import SaveResult, Timeframe
from helpers import BASE_MS, HOUR_MS, FakeClock, make_candle, make_candles

H1 = Timeframe.H1


# ---------------------------------------------------------------------------
# CandleStore
# ---------------------------------------------------------------------------


class TestCandleStore:
    @pytest.mark.asyncio
    async def test_decimal_values_round_trip_exactly(self, candle_store: CandleStore) -> None:
        candle = make_candle(BASE_MS, close="37050.10000000")
        await candle_store.upsert_candles("BTCUSDT", H1, [candle])

        [loaded] = await candle_store.get_candles("BTCUSDT", H1)

        assert loaded == candle
        assert str(loaded.close) == "37050.10000000"

    @pytest.mark.asyncio
    async def test_upsert_overwrites_existing_values(self, candle_store: CandleStore) -> None:
        await candle_store.upsert_candles("BTCUSDT", H1, [make_candle(BASE_MS, close="1")])
        result = await candle_store.upsert_candles(
            "BTCUSDT", H1, [make_candle(BASE_MS, close="2")]
        )

        assert result == SaveResult(new_count=0, updated_count=1, failed_count=0)
        [loaded] = await candle_store.get_candles("BTCUSDT", H1)
        assert str(loaded.close) == "2"

    @pytest.mark.asyncio
    async def test_bad_record_does_not_block_others(self, candle_store: CandleStore) -> None:
        candles = make_candles(BASE_MS, 5)
        # NOT NULL violation on one row
        candles[2] = dataclasses.replace(candles[2], trade_count=None)

        result = await candle_store.upsert_candles("BTCUSDT", H1, candles)

        assert result == SaveResult(new_count=4, updated_count=0, failed_count=1)
        assert await candle_store.count_candles("BTCUSDT", H1) == 4

    @pytest.mark.asyncio
    async def test_symbols_and_timeframes_are_isolated(self, candle_store: CandleStore) -> None:
        await candle_store.upsert_candles("BTCUSDT", H1, make_candles(BASE_MS, 3))
        await candle_store.upsert_candles(
            "ETHUSDT", H1, make_candles(BASE_MS, 2, symbol="ETHUSDT")
        )

        assert await candle_store.count_candles("BTCUSDT", H1) == 3
        assert await candle_store.count_candles("ETHUSDT", H1) == 2
        assert await candle_store.count_candles("BTCUSDT", Timeframe.M1) == 0


# ---------------------------------------------------------------------------
# BatchPersister
# ---------------------------------------------------------------------------


@pytest.fixture
def persister(candle_store: CandleStore, fake_clock: FakeClock) -> BatchPersister:
    return BatchPersister(candle_store, chunk_size=5000, sleep=fake_clock.sleep)


class TestBatchPersister:
    @pytest.mark.asyncio
    async def test_new_and_existing_accounting(
        self, persister: BatchPersister, candle_store: CandleStore
    ) -> None:
        candles = make_candles(BASE_MS, 15_000)
        await persister.save("BTCUSDT", H1, candles[:5000])

        result = await persister.save("BTCUSDT", H1, candles)

        assert result.new_count == 10_000
        assert result.updated_count == 5000
        assert result.failed_count == 0
        extent = await candle_store.get_extent("BTCUSDT", H1)
        assert extent is not None
        assert extent.total_candles == 15_000
        assert extent.earliest_ms == BASE_MS
        assert extent.latest_ms == BASE_MS + 14_999 * HOUR_MS

    @pytest.mark.asyncio
    async def test_saving_twice_is_idempotent(
        self, persister: BatchPersister, candle_store: CandleStore
    ) -> None:
        candles = make_candles(BASE_MS, 100)
        first = await persister.save("BTCUSDT", H1, candles)
        before = await candle_store.get_candles("BTCUSDT", H1)

        second = await persister.save("BTCUSDT", H1, candles)

        assert first.new_count == 100
        assert second.new_count == 0
        assert second.updated_count == 100
        assert await candle_store.get_candles("BTCUSDT", H1) == before
        extent = await candle_store.get_extent("BTCUSDT", H1)
        assert extent is not None
        assert extent.total_candles == 100

    @pytest.mark.asyncio
    async def test_large_save_recomputes_extent(
        self, candle_store: CandleStore, fake_clock: FakeClock
    ) -> None:
        persister = BatchPersister(
            candle_store, chunk_size=10, recompute_threshold=15, sleep=fake_clock.sleep
        )
        await persister.save("BTCUSDT", H1, make_candles(BASE_MS + 100 * HOUR_MS, 5))

        await persister.save("BTCUSDT", H1, make_candles(BASE_MS, 30))

        extent = await candle_store.get_extent("BTCUSDT", H1)
        assert extent is not None
        assert extent.earliest_ms == BASE_MS
        assert extent.latest_ms == BASE_MS + 104 * HOUR_MS
        assert extent.total_candles == 35

    @pytest.mark.asyncio
    async def test_empty_input_is_noop(self, persister: BatchPersister) -> None:
        assert await persister.save("BTCUSDT", H1, []) == SaveResult()

    @pytest.mark.asyncio
    async def test_chunk_retried_after_database_error(self, fake_clock: FakeClock) -> None:
        store = MagicMock()
        store.upsert_candles = AsyncMock(
            side_effect=[
                sqlite3.OperationalError("database is locked"),
                SaveResult(new_count=3),
            ]
        )
        store.apply_extent_delta = AsyncMock()
        persister = BatchPersister(store, retry_base_delay=0.5, sleep=fake_clock.sleep)

        result = await persister.save("BTCUSDT", H1, make_candles(BASE_MS, 3))

        assert result.new_count == 3
        assert fake_clock.sleeps == [0.5]
        store.apply_extent_delta.assert_awaited_once_with(
            "BTCUSDT", H1, BASE_MS, BASE_MS + 2 * HOUR_MS, 3
        )

    @pytest.mark.asyncio
    async def test_persistence_error_after_max_attempts(self, fake_clock: FakeClock) -> None:
        store = MagicMock()
        store.upsert_candles = AsyncMock(side_effect=sqlite3.OperationalError("disk I/O error"))
        persister = BatchPersister(
            store, max_attempts=3, retry_base_delay=0.5, sleep=fake_clock.sleep
        )

        with pytest.raises(PersistenceError):
            await persister.save("BTCUSDT", H1, make_candles(BASE_MS, 3))

        assert store.upsert_candles.await_count == 3
        assert fake_clock.sleeps == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_extent_covers_chunks_written_before_failure(
        self, fake_clock: FakeClock
    ) -> None:
        store = MagicMock()
        store.upsert_candles = AsyncMock(
            side_effect=[SaveResult(new_count=2)]
            + [sqlite3.OperationalError("disk I/O error")] * 3
        )
        store.apply_extent_delta = AsyncMock()
        persister = BatchPersister(
            store, chunk_size=2, max_attempts=3, retry_base_delay=0.5, sleep=fake_clock.sleep
        )

        with pytest.raises(PersistenceError):
            await persister.save("BTCUSDT", H1, make_candles(BASE_MS, 4))

        store.apply_extent_delta.assert_awaited_once_with(
            "BTCUSDT", H1, BASE_MS, BASE_MS + HOUR_MS, 2
        )

    @pytest.mark.asyncio
    async def test_partial_save_extent_matches_table(
        self, candle_store: CandleStore, fake_clock: FakeClock
    ) -> None:
        real_upsert = candle_store.upsert_candles
        calls = 0

        async def flaky_upsert(symbol, timeframe, chunk):
            nonlocal calls
            calls += 1
            if calls > 1:
                raise sqlite3.OperationalError("database is locked")
            return await real_upsert(symbol, timeframe, chunk)

        candle_store.upsert_candles = flaky_upsert
        persister = BatchPersister(
            candle_store, chunk_size=3, max_attempts=2, sleep=fake_clock.sleep
        )

        with pytest.raises(PersistenceError):
            await persister.save("BTCUSDT", H1, make_candles(BASE_MS, 6))

        extent = await candle_store.get_extent("BTCUSDT", H1)
        assert extent is not None
        assert (extent.earliest_ms, extent.latest_ms) == (BASE_MS, BASE_MS + 2 * HOUR_MS)
        assert extent.total_candles == await candle_store.count_candles("BTCUSDT", H1) == 3
