"""Upstream response types and the Binance kline row parser.

Binance returns klines as 12-element arrays:
[openTime, open, high, low, close, volume, closeTime, quoteVolume,
 tradeCount, takerBuyBaseVolume, takerBuyQuoteVolume, ignore]
Prices and volumes arrive as strings and go straight into Decimal.
"""

from dataclasses import dataclass, field
from decimal import Decimal

from backfill.models import Candle, Timeframe


@dataclass
class KlinePage:
    """One page of klines plus the weight the upstream reports as used."""

    candles: list[Candle]
    used_weight: int | None = None


@dataclass
class SymbolInfo:
    """A tradable instrument listed by the exchange."""

    symbol: str
    base_asset: str
    quote_asset: str
    status: str = "TRADING"
    contract_type: str | None = None


@dataclass
class ExchangeInfo:
    """Instrument listing plus the weight the upstream reports as used."""

    symbols: list[SymbolInfo] = field(default_factory=list)
    used_weight: int | None = None


def parse_kline_row(symbol: str, timeframe: Timeframe, row: list) -> Candle:
    """Convert a raw 12-field Binance kline row into a Candle."""
    return Candle(
        symbol=symbol,
        timeframe=timeframe,
        open_time_ms=int(row[0]),
        close_time_ms=int(row[6]),
        open=Decimal(str(row[1])),
        high=Decimal(str(row[2])),
        low=Decimal(str(row[3])),
        close=Decimal(str(row[4])),
        volume=Decimal(str(row[5])),
        quote_volume=Decimal(str(row[7])),
        trade_count=int(row[8]),
        taker_buy_base_volume=Decimal(str(row[9])),
        taker_buy_quote_volume=Decimal(str(row[10])),
    )
