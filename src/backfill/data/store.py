"""Typed SQLite read/write abstraction for candles and their extents.

All SQL touching the candles and symbol_extents tables is isolated behind
CandleStore. Candle values are stored as TEXT and restored as Decimal.
"""

import sqlite3
from decimal import Decimal

from backfill.data.database import CandleDatabase
from backfill.logging import get_logger
from backfill.models import Candle, SaveResult, SymbolTimeframeExtent, Timeframe, now_ms

logger = get_logger(__name__)

_CANDLE_COLUMNS = (
    "symbol, timeframe, open_time_ms, close_time_ms, open, high, low, close, "
    "volume, quote_volume, trade_count, taker_buy_base_volume, taker_buy_quote_volume"
)

_UPSERT_CANDLE_SQL = (
    f"INSERT INTO candles ({_CANDLE_COLUMNS}) "
    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
    "ON CONFLICT(symbol, timeframe, open_time_ms) DO UPDATE SET "
    "close_time_ms = excluded.close_time_ms, "
    "open = excluded.open, "
    "high = excluded.high, "
    "low = excluded.low, "
    "close = excluded.close, "
    "volume = excluded.volume, "
    "quote_volume = excluded.quote_volume, "
    "trade_count = excluded.trade_count, "
    "taker_buy_base_volume = excluded.taker_buy_base_volume, "
    "taker_buy_quote_volume = excluded.taker_buy_quote_volume"
)


def _candle_row(candle: Candle) -> tuple:
    return (
        candle.symbol,
        candle.timeframe.value,
        candle.open_time_ms,
        candle.close_time_ms,
        str(candle.open),
        str(candle.high),
        str(candle.low),
        str(candle.close),
        str(candle.volume),
        str(candle.quote_volume),
        candle.trade_count,
        str(candle.taker_buy_base_volume),
        str(candle.taker_buy_quote_volume),
    )


class CandleStore:
    """Async SQLite store for candles and per symbol/timeframe extents.

    Usage:
        async with CandleDatabase("data/candles.db") as database:
            store = CandleStore(database)
            result = await store.upsert_candles("BTCUSDT", Timeframe.H1, candles)
    """

    def __init__(self, database: CandleDatabase) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # Write methods
    # ──────────────────────────────────────────────

    async def upsert_candles(
        self, symbol: str, timeframe: Timeframe, candles: list[Candle]
    ) -> SaveResult:
        """Upsert one chunk of candles in a single transaction.

        Existing keys are overwritten, missing keys inserted. New vs updated
        is decided from the keys present before the write. If a record
        violates a constraint the chunk is replayed row by row so the other
        records still land; the bad ones are counted in failed_count.

        Operational errors (locked database, I/O) roll back the chunk and
        propagate to the caller.
        """
        if not candles:
            return SaveResult()

        rows = [_candle_row(c) for c in candles]
        keys = {c.open_time_ms for c in candles}

        async with self._database.transaction() as db:
            cursor = await db.execute(
                "SELECT open_time_ms FROM candles "
                "WHERE symbol = ? AND timeframe = ? AND open_time_ms BETWEEN ? AND ?",
                (symbol, timeframe.value, min(keys), max(keys)),
            )
            existing = {row[0] for row in await cursor.fetchall()}

            failed = 0
            try:
                await db.executemany(_UPSERT_CANDLE_SQL, rows)
                written = keys
            except sqlite3.IntegrityError:
                await db.rollback()
                written = set()
                for row in rows:
                    try:
                        await db.execute(_UPSERT_CANDLE_SQL, row)
                        written.add(row[2])
                    except sqlite3.IntegrityError as e:
                        failed += 1
                        logger.warning(
                            "candle_rejected",
                            symbol=symbol,
                            timeframe=timeframe.value,
                            open_time_ms=row[2],
                            error=str(e),
                        )

        result = SaveResult(
            new_count=len(written - existing),
            updated_count=len(written & existing),
            failed_count=failed,
        )
        logger.debug(
            "upserted_candles",
            symbol=symbol,
            timeframe=timeframe.value,
            total=len(candles),
            new=result.new_count,
            updated=result.updated_count,
            failed=result.failed_count,
        )
        return result

    async def apply_extent_delta(
        self,
        symbol: str,
        timeframe: Timeframe,
        earliest_ms: int,
        latest_ms: int,
        new_candles: int,
    ) -> None:
        """Cheap incremental extent update: widen bounds, add to the count."""
        async with self._database.transaction() as db:
            await db.execute(
                "INSERT INTO symbol_extents "
                "(symbol, timeframe, earliest_ms, latest_ms, total_candles, last_updated_ms) "
                "VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(symbol, timeframe) DO UPDATE SET "
                "earliest_ms = MIN(COALESCE(earliest_ms, excluded.earliest_ms), excluded.earliest_ms), "
                "latest_ms = MAX(COALESCE(latest_ms, excluded.latest_ms), excluded.latest_ms), "
                "total_candles = total_candles + excluded.total_candles, "
                "last_updated_ms = excluded.last_updated_ms",
                (symbol, timeframe.value, earliest_ms, latest_ms, new_candles, now_ms()),
            )

    async def recompute_extent(
        self, symbol: str, timeframe: Timeframe
    ) -> SymbolTimeframeExtent:
        """Exact extent from a full aggregate over the stored candles."""
        async with self._database.transaction() as db:
            cursor = await db.execute(
                "SELECT MIN(open_time_ms), MAX(open_time_ms), COUNT(*) "
                "FROM candles WHERE symbol = ? AND timeframe = ?",
                (symbol, timeframe.value),
            )
            earliest, latest, total = await cursor.fetchone()
            updated_at = now_ms()
            await db.execute(
                "INSERT OR REPLACE INTO symbol_extents "
                "(symbol, timeframe, earliest_ms, latest_ms, total_candles, last_updated_ms) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (symbol, timeframe.value, earliest, latest, total, updated_at),
            )

        logger.info(
            "extent_recomputed",
            symbol=symbol,
            timeframe=timeframe.value,
            total_candles=total,
        )
        return SymbolTimeframeExtent(
            symbol=symbol,
            timeframe=timeframe,
            earliest_ms=earliest,
            latest_ms=latest,
            total_candles=total,
            last_updated_ms=updated_at,
        )

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def get_extent(
        self, symbol: str, timeframe: Timeframe
    ) -> SymbolTimeframeExtent | None:
        """Get the cached extent for a symbol and timeframe, or None."""
        cursor = await self._database.db.execute(
            "SELECT earliest_ms, latest_ms, total_candles, last_updated_ms "
            "FROM symbol_extents WHERE symbol = ? AND timeframe = ?",
            (symbol, timeframe.value),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return SymbolTimeframeExtent(
            symbol=symbol,
            timeframe=timeframe,
            earliest_ms=row[0],
            latest_ms=row[1],
            total_candles=row[2],
            last_updated_ms=row[3],
        )

    async def list_extents(self, symbol: str | None = None) -> list[SymbolTimeframeExtent]:
        """All cached extents, optionally for a single symbol."""
        query = (
            "SELECT symbol, timeframe, earliest_ms, latest_ms, total_candles, last_updated_ms "
            "FROM symbol_extents"
        )
        params: list = []
        if symbol is not None:
            query += " WHERE symbol = ?"
            params.append(symbol)
        query += " ORDER BY symbol, timeframe"

        cursor = await self._database.db.execute(query, params)
        rows = await cursor.fetchall()
        return [
            SymbolTimeframeExtent(
                symbol=row[0],
                timeframe=Timeframe(row[1]),
                earliest_ms=row[2],
                latest_ms=row[3],
                total_candles=row[4],
                last_updated_ms=row[5],
            )
            for row in rows
        ]

    async def list_open_times(
        self, symbol: str, timeframe: Timeframe, since_ms: int, until_ms: int
    ) -> list[int]:
        """Stored open times in [since_ms, until_ms], ascending."""
        cursor = await self._database.db.execute(
            "SELECT open_time_ms FROM candles "
            "WHERE symbol = ? AND timeframe = ? AND open_time_ms BETWEEN ? AND ? "
            "ORDER BY open_time_ms ASC",
            (symbol, timeframe.value, since_ms, until_ms),
        )
        return [row[0] for row in await cursor.fetchall()]

    async def first_open_time(
        self, symbol: str, timeframe: Timeframe, since_ms: int, until_ms: int
    ) -> int | None:
        """Earliest stored open time in [since_ms, until_ms], or None."""
        cursor = await self._database.db.execute(
            "SELECT open_time_ms FROM candles "
            "WHERE symbol = ? AND timeframe = ? AND open_time_ms BETWEEN ? AND ? "
            "ORDER BY open_time_ms ASC LIMIT 1",
            (symbol, timeframe.value, since_ms, until_ms),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def neighbour_open_times(
        self, symbol: str, timeframe: Timeframe, before_ms: int, after_ms: int
    ) -> tuple[int | None, int | None]:
        """Last stored open time before before_ms and first one after after_ms."""
        cursor = await self._database.db.execute(
            "SELECT "
            "(SELECT MAX(open_time_ms) FROM candles "
            " WHERE symbol = ? AND timeframe = ? AND open_time_ms < ?), "
            "(SELECT MIN(open_time_ms) FROM candles "
            " WHERE symbol = ? AND timeframe = ? AND open_time_ms > ?)",
            (symbol, timeframe.value, before_ms, symbol, timeframe.value, after_ms),
        )
        row = await cursor.fetchone()
        return row[0], row[1]

    async def get_candles(
        self,
        symbol: str,
        timeframe: Timeframe,
        since_ms: int | None = None,
        until_ms: int | None = None,
        limit: int | None = None,
    ) -> list[Candle]:
        """Query candles within an optional time range, ordered by open time ASC."""
        conditions = ["symbol = ?", "timeframe = ?"]
        params: list = [symbol, timeframe.value]

        if since_ms is not None:
            conditions.append("open_time_ms >= ?")
            params.append(since_ms)
        if until_ms is not None:
            conditions.append("open_time_ms <= ?")
            params.append(until_ms)

        where = " AND ".join(conditions)
        query = f"SELECT {_CANDLE_COLUMNS} FROM candles WHERE {where} ORDER BY open_time_ms ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        cursor = await self._database.db.execute(query, params)
        rows = await cursor.fetchall()
        return [
            Candle(
                symbol=row[0],
                timeframe=Timeframe(row[1]),
                open_time_ms=row[2],
                close_time_ms=row[3],
                open=Decimal(row[4]),
                high=Decimal(row[5]),
                low=Decimal(row[6]),
                close=Decimal(row[7]),
                volume=Decimal(row[8]),
                quote_volume=Decimal(row[9]),
                trade_count=row[10],
                taker_buy_base_volume=Decimal(row[11]),
                taker_buy_quote_volume=Decimal(row[12]),
            )
            for row in rows
        ]

    async def count_candles(self, symbol: str, timeframe: Timeframe) -> int:
        """Exact number of stored candles for a symbol and timeframe."""
        cursor = await self._database.db.execute(
            "SELECT COUNT(*) FROM candles WHERE symbol = ? AND timeframe = ?",
            (symbol, timeframe.value),
        )
        return (await cursor.fetchone())[0]
