"""Tests for SymbolRegistry.ensure_symbol."""

from unittest.mock import AsyncMock

import pytest

from backfill.exceptions import InvalidSymbolError
from backfill.exchange.types import ExchangeInfo, SymbolInfo
from backfill.exchange.weight import WeightBudgetTracker
from backfill.models import SymbolRecord
from backfill.symbols.registry import SymbolRegistry
from backfill.symbols.store import SymbolStore
from helpers import FakeClock

LISTING = ExchangeInfo(
    symbols=[
        SymbolInfo("BTCUSDT", "BTC", "USDT", contract_type="PERPETUAL"),
        SymbolInfo("ETHUSDT", "ETH", "USDT", contract_type="PERPETUAL"),
        SymbolInfo("LUNAUSDT", "LUNA", "USDT", status="SETTLING"),
    ],
    used_weight=None,
)


@pytest.fixture
def tracker(fake_clock: FakeClock) -> WeightBudgetTracker:
    return WeightBudgetTracker(limit=6000, clock=fake_clock, sleep=fake_clock.sleep)


@pytest.fixture
def client() -> AsyncMock:
    client = AsyncMock()
    client.fetch_exchange_info = AsyncMock(return_value=LISTING)
    return client


@pytest.fixture
def registry(
    symbol_store: SymbolStore, client: AsyncMock, tracker: WeightBudgetTracker
) -> SymbolRegistry:
    return SymbolRegistry(symbol_store, client, tracker, exchange_info_weight=10)


class TestEnsureSymbol:
    @pytest.mark.asyncio
    async def test_known_active_symbol_skips_upstream(
        self, registry: SymbolRegistry, symbol_store: SymbolStore, client: AsyncMock
    ) -> None:
        await symbol_store.upsert(SymbolRecord("BTCUSDT", "BTC", "USDT"))

        record = await registry.ensure_symbol("btcusdt")

        assert record.symbol == "BTCUSDT"
        client.fetch_exchange_info.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_new_symbol_registered_from_listing(
        self,
        registry: SymbolRegistry,
        symbol_store: SymbolStore,
        tracker: WeightBudgetTracker,
    ) -> None:
        record = await registry.ensure_symbol("ETHUSDT")

        assert record.base_asset == "ETH"
        assert record.quote_asset == "USDT"
        stored = await symbol_store.get("ETHUSDT")
        assert stored is not None and stored.is_active
        assert tracker.snapshot().used == 10

    @pytest.mark.asyncio
    async def test_reported_weight_overrides_estimate(
        self, registry: SymbolRegistry, client: AsyncMock, tracker: WeightBudgetTracker
    ) -> None:
        client.fetch_exchange_info.return_value = ExchangeInfo(
            symbols=LISTING.symbols, used_weight=250
        )

        await registry.ensure_symbol("ETHUSDT")

        assert tracker.snapshot().used == 250

    @pytest.mark.asyncio
    async def test_unlisted_symbol_rejected(
        self, registry: SymbolRegistry, symbol_store: SymbolStore
    ) -> None:
        with pytest.raises(InvalidSymbolError):
            await registry.ensure_symbol("DOGEBTC")

        assert await symbol_store.get("DOGEBTC") is None

    @pytest.mark.asyncio
    async def test_non_trading_symbol_rejected(self, registry: SymbolRegistry) -> None:
        with pytest.raises(InvalidSymbolError, match="not trading"):
            await registry.ensure_symbol("LUNAUSDT")

    @pytest.mark.asyncio
    async def test_inactive_symbol_reactivated(
        self, registry: SymbolRegistry, symbol_store: SymbolStore, client: AsyncMock
    ) -> None:
        await symbol_store.upsert(SymbolRecord("BTCUSDT", "BTC", "USDT", is_active=False))

        record = await registry.ensure_symbol("BTCUSDT")

        assert record.is_active
        client.fetch_exchange_info.assert_awaited_once()
        stored = await symbol_store.get("BTCUSDT")
        assert stored is not None and stored.is_active
