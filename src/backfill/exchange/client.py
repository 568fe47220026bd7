"""Abstract kline client interface.

The fetcher and symbol registry depend only on this interface, keeping the
ccxt/Binance specifics isolated in the concrete implementation.
"""

from abc import ABC, abstractmethod

from backfill.exchange.types import ExchangeInfo, KlinePage
from backfill.models import Timeframe


class KlineClient(ABC):
    """Abstract base class for upstream kline API clients.

    Implementations translate transport errors into the backfill exception
    taxonomy: RateLimitError, TransientNetworkError or UpstreamError.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Initialize the underlying HTTP session."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release HTTP resources."""
        ...

    @abstractmethod
    async def fetch_klines(
        self,
        symbol: str,
        timeframe: Timeframe,
        start_ms: int,
        end_ms: int,
        limit: int = 1500,
    ) -> KlinePage:
        """Fetch one page of klines with open time in [start_ms, end_ms].

        Pagination is NOT handled here -- RetryingFetcher.fetch_range walks
        the window page by page.
        """
        ...

    @abstractmethod
    async def fetch_exchange_info(self) -> ExchangeInfo:
        """Fetch the list of instruments the exchange currently lists."""
        ...
