"""Exchange client layer -- Binance USD-M kline API via ccxt, plus weight pacing."""

from backfill.exchange.binance_client import BinanceClient
from backfill.exchange.client import KlineClient
from backfill.exchange.types import ExchangeInfo, KlinePage, SymbolInfo, parse_kline_row
from backfill.exchange.weight import WeightBudgetTracker, WeightUsage

__all__ = [
    "BinanceClient",
    "ExchangeInfo",
    "KlineClient",
    "KlinePage",
    "SymbolInfo",
    "WeightBudgetTracker",
    "WeightUsage",
    "parse_kline_row",
]
