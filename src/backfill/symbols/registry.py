"""Makes sure a symbol is known and tradable before a job is accepted for it."""

from backfill.exceptions import InvalidSymbolError
from backfill.exchange.client import KlineClient
from backfill.exchange.weight import WeightBudgetTracker
from backfill.logging import get_logger
from backfill.models import SymbolRecord
from backfill.symbols.store import SymbolStore

logger = get_logger(__name__)

_TRADING = "TRADING"


class SymbolRegistry:
    """Resolves symbols against the local table, falling back to exchange info.

    An active local record is trusted without an upstream call. Otherwise
    the exchange listing is fetched (weight 10 on Binance, paced through the
    shared tracker) and the symbol is registered or reactivated.

    Usage:
        registry = SymbolRegistry(symbol_store, client, weight_tracker)
        record = await registry.ensure_symbol("btcusdt")
    """

    def __init__(
        self,
        store: SymbolStore,
        client: KlineClient,
        weight_tracker: WeightBudgetTracker,
        exchange_info_weight: int = 10,
    ) -> None:
        self._store = store
        self._client = client
        self._weight = weight_tracker
        self._exchange_info_weight = exchange_info_weight

    async def ensure_symbol(self, symbol: str) -> SymbolRecord:
        """Return the active record for symbol, registering it if needed.

        Raises:
            InvalidSymbolError: The exchange does not list the symbol, or it
                is not currently trading.
        """
        symbol = symbol.upper()
        record = await self._store.get(symbol)
        if record is not None and record.is_active:
            return record

        await self._weight.reserve(self._exchange_info_weight)
        info = await self._client.fetch_exchange_info()
        self._weight.observe(info.used_weight)

        listed = next((s for s in info.symbols if s.symbol == symbol), None)
        if listed is None:
            raise InvalidSymbolError(f"Symbol {symbol} is not listed on the exchange")
        if listed.status != _TRADING:
            raise InvalidSymbolError(f"Symbol {symbol} is not trading (status {listed.status})")

        if record is not None:
            record.is_active = True
            await self._store.upsert(record)
            logger.info("symbol_reactivated", symbol=symbol)
            return record

        record = SymbolRecord(
            symbol=symbol,
            base_asset=listed.base_asset,
            quote_asset=listed.quote_asset,
        )
        await self._store.upsert(record)
        logger.info(
            "symbol_registered",
            symbol=symbol,
            base_asset=listed.base_asset,
            quote_asset=listed.quote_asset,
        )
        return record
