"""SQLite storage for candles, extents, download jobs and symbols.

One aiosqlite connection is shared by every component in the process.
Reads go straight to it; writes go through transaction(), which serializes
them so concurrent jobs never commit or roll back each other's work.
"""

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Self

import aiosqlite

from backfill.logging import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS candles (
    symbol TEXT NOT NULL,
    timeframe TEXT NOT NULL,
    open_time_ms INTEGER NOT NULL,
    close_time_ms INTEGER NOT NULL,
    open TEXT NOT NULL,
    high TEXT NOT NULL,
    low TEXT NOT NULL,
    close TEXT NOT NULL,
    volume TEXT NOT NULL,
    quote_volume TEXT NOT NULL,
    trade_count INTEGER NOT NULL,
    taker_buy_base_volume TEXT NOT NULL,
    taker_buy_quote_volume TEXT NOT NULL,
    PRIMARY KEY (symbol, timeframe, open_time_ms)
);

CREATE TABLE IF NOT EXISTS symbol_extents (
    symbol TEXT NOT NULL,
    timeframe TEXT NOT NULL,
    earliest_ms INTEGER,
    latest_ms INTEGER,
    total_candles INTEGER NOT NULL DEFAULT 0,
    last_updated_ms INTEGER,
    PRIMARY KEY (symbol, timeframe)
);

CREATE TABLE IF NOT EXISTS download_jobs (
    id TEXT PRIMARY KEY,
    symbol TEXT NOT NULL,
    timeframe TEXT NOT NULL,
    start_ms INTEGER NOT NULL,
    end_ms INTEGER NOT NULL,
    status TEXT NOT NULL,
    progress REAL NOT NULL DEFAULT 0,
    processed_candles INTEGER NOT NULL DEFAULT 0,
    total_candles INTEGER NOT NULL DEFAULT 0,
    new_candles INTEGER NOT NULL DEFAULT 0,
    updated_candles INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    requested_by TEXT,
    created_at_ms INTEGER NOT NULL,
    started_at_ms INTEGER,
    completed_at_ms INTEGER,
    last_progress_at_ms INTEGER
);

CREATE TABLE IF NOT EXISTS symbols (
    symbol TEXT PRIMARY KEY,
    base_asset TEXT NOT NULL,
    quote_asset TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    updated_at_ms INTEGER NOT NULL
);
"""

_CREATE_INDEXES_SQL = """
CREATE INDEX IF NOT EXISTS idx_jobs_status
    ON download_jobs(status);

CREATE INDEX IF NOT EXISTS idx_jobs_created
    ON download_jobs(created_at_ms);

-- At most one pending/running job per symbol and timeframe
CREATE UNIQUE INDEX IF NOT EXISTS uq_jobs_active_symbol_timeframe
    ON download_jobs(symbol, timeframe)
    WHERE status IN ('pending', 'running');
"""

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
)


class CandleDatabase:
    """Owns the shared aiosqlite connection and the schema.

    Usage:
        async with CandleDatabase("data/candles.db") as database:
            store = CandleStore(database)
            ...
    """

    def __init__(self, db_path: str = "data/candles.db") -> None:
        self._db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    @property
    def db(self) -> aiosqlite.Connection:
        """The open connection. Raises RuntimeError before connect()."""
        if self._connection is None:
            raise RuntimeError(f"CandleDatabase({self._db_path}) is not connected")
        return self._connection

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a write transaction under the shared write lock.

        Commits when the block exits normally; rolls back and re-raises
        otherwise.
        """
        async with self._write_lock:
            try:
                yield self.db
            except BaseException:
                await self.db.rollback()
                raise
            await self.db.commit()

    async def connect(self) -> None:
        """Open the file (creating its directory), tune pragmas, apply the schema."""
        parent = os.path.dirname(self._db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)

        conn = await aiosqlite.connect(self._db_path)
        for pragma in _PRAGMAS:
            await conn.execute(pragma)
        self._connection = conn

        await self._migrate()
        logger.info("candle_db_connected", db_path=self._db_path)

    async def close(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None
        logger.info("candle_db_closed", db_path=self._db_path)

    async def _migrate(self) -> None:
        conn = self.db
        await conn.executescript(_CREATE_TABLES_SQL)
        await conn.executescript(_CREATE_INDEXES_SQL)

        cursor = await conn.execute("SELECT MAX(version) FROM schema_version")
        (current,) = await cursor.fetchone()
        if current is None:
            await conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
            )
            logger.info("candle_db_schema_created", version=SCHEMA_VERSION)
        elif current != SCHEMA_VERSION:
            logger.warning(
                "candle_db_schema_mismatch", found=current, expected=SCHEMA_VERSION
            )
        await conn.commit()

    async def __aenter__(self) -> Self:
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore[no-untyped-def]
        await self.close()
