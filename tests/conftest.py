"""Shared test fixtures for the kline backfill engine."""

from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from backfill.config import AppSettings, BinanceSettings, StorageSettings
from backfill.data.database import CandleDatabase
from backfill.data.store import CandleStore
from backfill.jobs.store import JobStore
from backfill.symbols.store import SymbolStore
from helpers import FakeClock, RecordingSink


@pytest.fixture
def mock_settings() -> AppSettings:
    """Return AppSettings with fast retries for tests."""
    return AppSettings(
        log_level="DEBUG",
        binance=BinanceSettings(retry_base_delay=0.01, page_delay=0.0),
        storage=StorageSettings(retry_base_delay=0.01),
    )


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncIterator[CandleDatabase]:
    """Connected CandleDatabase backed by a file under tmp_path."""
    db = CandleDatabase(str(tmp_path / "candles.db"))
    await db.connect()
    yield db
    await db.close()


@pytest.fixture
def candle_store(database: CandleDatabase) -> CandleStore:
    return CandleStore(database)


@pytest.fixture
def job_store(database: CandleDatabase) -> JobStore:
    return JobStore(database)


@pytest.fixture
def symbol_store(database: CandleDatabase) -> SymbolStore:
    return SymbolStore(database)
