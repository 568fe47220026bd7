"""Binance USD-M futures kline client via ccxt async.

Uses the raw implicit endpoints (fapiPublicGetKlines, fapiPublicGetExchangeInfo)
rather than ccxt's unified fetch_ohlcv, because the unified call drops the
trade count and taker volume fields and hides the used-weight header.

ccxt's own throttler is disabled: pacing is done by WeightBudgetTracker, which
is shared across all jobs in the process and corrected by the
x-mbx-used-weight-1m header after every response.
"""

import ccxt.async_support as ccxt_async

from backfill.config import BinanceSettings
from backfill.exceptions import RateLimitError, TransientNetworkError, UpstreamError
from backfill.exchange.client import KlineClient
from backfill.exchange.types import ExchangeInfo, KlinePage, SymbolInfo, parse_kline_row
from backfill.logging import get_logger
from backfill.models import Timeframe

logger = get_logger(__name__)

USED_WEIGHT_HEADER = "x-mbx-used-weight-1m"


class BinanceClient(KlineClient):
    """Concrete Binance USD-M client using ccxt async."""

    def __init__(self, settings: BinanceSettings) -> None:
        self._settings = settings
        self._exchange = ccxt_async.binanceusdm(
            {
                "enableRateLimit": False,
                "timeout": settings.request_timeout_ms,
            }
        )

    @property
    def exchange(self) -> ccxt_async.binanceusdm:
        """Access the underlying ccxt exchange instance."""
        return self._exchange

    async def connect(self) -> None:
        """Nothing to preload: raw endpoints do not need load_markets()."""
        logger.info("binance_client_ready", timeout_ms=self._settings.request_timeout_ms)

    async def close(self) -> None:
        """Clean up ccxt async resources. CRITICAL: must be called to avoid resource leaks."""
        await self._exchange.close()
        logger.info("binance_connection_closed")

    async def fetch_klines(
        self,
        symbol: str,
        timeframe: Timeframe,
        start_ms: int,
        end_ms: int,
        limit: int = 1500,
    ) -> KlinePage:
        """Fetch one page of raw klines and the authoritative used weight."""
        params = {
            "symbol": symbol.upper(),
            "interval": timeframe.value,
            "startTime": start_ms,
            "endTime": end_ms,
            "limit": min(limit, self._settings.page_limit),
        }
        logger.debug(
            "fetching_klines",
            symbol=symbol,
            timeframe=timeframe.value,
            start_ms=start_ms,
            end_ms=end_ms,
        )
        rows = await self._call(self._exchange.fapiPublicGetKlines, params)
        candles = [parse_kline_row(symbol.upper(), timeframe, row) for row in rows]
        return KlinePage(candles=candles, used_weight=self._used_weight())

    async def fetch_exchange_info(self) -> ExchangeInfo:
        """Fetch the instrument listing (weight 10 on Binance)."""
        data = await self._call(self._exchange.fapiPublicGetExchangeInfo, {})
        symbols = [
            SymbolInfo(
                symbol=s["symbol"],
                base_asset=s.get("baseAsset", ""),
                quote_asset=s.get("quoteAsset", ""),
                status=s.get("status", ""),
                contract_type=s.get("contractType"),
            )
            for s in data.get("symbols", [])
        ]
        return ExchangeInfo(symbols=symbols, used_weight=self._used_weight())

    async def _call(self, endpoint, params: dict):  # type: ignore[no-untyped-def]
        """Invoke a ccxt endpoint, translating ccxt errors into backfill errors.

        Order matters: RateLimitExceeded and DDoSProtection are NetworkError
        subclasses in ccxt's hierarchy.
        """
        try:
            return await endpoint(params)
        except (ccxt_async.RateLimitExceeded, ccxt_async.DDoSProtection) as e:
            raise RateLimitError(str(e)) from e
        except ccxt_async.NetworkError as e:
            raise TransientNetworkError(str(e)) from e
        except ccxt_async.BaseError as e:
            raise UpstreamError(str(e)) from e

    def _used_weight(self) -> int | None:
        """Read the used-weight header from the last response, if present."""
        headers = self._exchange.last_response_headers or {}
        for key, value in headers.items():
            if key.lower() == USED_WEIGHT_HEADER:
                try:
                    return int(value)
                except (TypeError, ValueError):
                    return None
        return None
