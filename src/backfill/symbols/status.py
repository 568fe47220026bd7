"""Per-symbol data status: stored extents plus whether a download is in flight.

Job scheduling needs symbol lookups, and symbol status needs to know about
active jobs. ActiveJobLookup is the narrow interface that lets this module
ask about jobs without importing the job service.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from backfill.data.store import CandleStore
from backfill.models import DownloadJob, SymbolRecord, SymbolTimeframeExtent, Timeframe
from backfill.symbols.store import SymbolStore


class ActiveJobLookup(ABC):
    """Answers "is something downloading this symbol/timeframe right now?"."""

    @abstractmethod
    async def find_active_job(self, symbol: str, timeframe: Timeframe) -> DownloadJob | None:
        ...


@dataclass
class TimeframeStatus:
    timeframe: Timeframe
    extent: SymbolTimeframeExtent | None
    loading_job: DownloadJob | None = None

    @property
    def is_loading(self) -> bool:
        return self.loading_job is not None

    def to_dict(self) -> dict:
        extent = self.extent
        return {
            "timeframe": self.timeframe.value,
            "earliestMs": extent.earliest_ms if extent else None,
            "latestMs": extent.latest_ms if extent else None,
            "totalCandles": extent.total_candles if extent else 0,
            "isLoading": self.is_loading,
            "loadingJobId": self.loading_job.id if self.loading_job else None,
            "loadingProgress": self.loading_job.progress if self.loading_job else None,
        }


@dataclass
class SymbolStatus:
    symbol: SymbolRecord
    timeframes: list[TimeframeStatus] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol.symbol,
            "baseAsset": self.symbol.base_asset,
            "quoteAsset": self.symbol.quote_asset,
            "isActive": self.symbol.is_active,
            "timeframes": [t.to_dict() for t in self.timeframes],
        }


class SymbolStatusService:
    """Combines symbol records, candle extents and active jobs."""

    def __init__(
        self,
        symbol_store: SymbolStore,
        candle_store: CandleStore,
        jobs: ActiveJobLookup,
    ) -> None:
        self._symbols = symbol_store
        self._candles = candle_store
        self._jobs = jobs

    async def get_status(self, symbol: str) -> SymbolStatus | None:
        """Status of one symbol across every timeframe with data or a running job."""
        record = await self._symbols.get(symbol.upper())
        if record is None:
            return None
        return await self._build(record)

    async def list_statuses(self, active_only: bool = True) -> list[SymbolStatus]:
        records = await self._symbols.list_symbols(active_only=active_only)
        return [await self._build(record) for record in records]

    async def _build(self, record: SymbolRecord) -> SymbolStatus:
        extents = {e.timeframe: e for e in await self._candles.list_extents(record.symbol)}
        status = SymbolStatus(symbol=record)
        for timeframe in Timeframe:
            job = await self._jobs.find_active_job(record.symbol, timeframe)
            extent = extents.get(timeframe)
            if extent is None and job is None:
                continue
            status.timeframes.append(TimeframeStatus(timeframe, extent, job))
        return status
