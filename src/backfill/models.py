"""Shared data models for the kline backfill engine.

CRITICAL: Prices and volumes use Decimal and are stored as TEXT. Never use
float for candle values; Binance sends them as strings and they must survive
a store/load round-trip unchanged.

All timestamps are Unix milliseconds (UTC).
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from backfill.exceptions import ValidationError

_MINUTE_MS = 60_000
_HOUR_MS = 60 * _MINUTE_MS
_DAY_MS = 24 * _HOUR_MS


class Timeframe(str, Enum):
    """Candle sampling interval (Binance kline interval codes)."""

    M1 = "1m"
    M3 = "3m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H2 = "2h"
    H4 = "4h"
    H6 = "6h"
    H8 = "8h"
    H12 = "12h"
    D1 = "1d"
    D3 = "3d"
    W1 = "1w"

    @property
    def interval_ms(self) -> int:
        """Length of one candle in milliseconds."""
        return _INTERVAL_MS[self]

    @classmethod
    def parse(cls, raw: str) -> "Timeframe":
        """Parse a timeframe code, raising ValidationError for unknown values."""
        try:
            return cls(raw)
        except ValueError:
            raise ValidationError(f"Unsupported timeframe '{raw}'") from None


_INTERVAL_MS = {
    Timeframe.M1: _MINUTE_MS,
    Timeframe.M3: 3 * _MINUTE_MS,
    Timeframe.M5: 5 * _MINUTE_MS,
    Timeframe.M15: 15 * _MINUTE_MS,
    Timeframe.M30: 30 * _MINUTE_MS,
    Timeframe.H1: _HOUR_MS,
    Timeframe.H2: 2 * _HOUR_MS,
    Timeframe.H4: 4 * _HOUR_MS,
    Timeframe.H6: 6 * _HOUR_MS,
    Timeframe.H8: 8 * _HOUR_MS,
    Timeframe.H12: 12 * _HOUR_MS,
    Timeframe.D1: _DAY_MS,
    Timeframe.D3: 3 * _DAY_MS,
    Timeframe.W1: 7 * _DAY_MS,
}


class JobStatus(str, Enum):
    """Download job lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)


class GapOrigin(str, Enum):
    """Why a sub-range was scheduled for download."""

    BEFORE_EXISTING = "before-existing"
    INTERIOR_GAP = "interior-gap"
    AFTER_EXISTING = "after-existing"
    VERIFICATION_REDOWNLOAD = "verification-redownload"


@dataclass(frozen=True)
class Candle:
    """A single kline keyed by (symbol, timeframe, open_time_ms)."""

    symbol: str
    timeframe: Timeframe
    open_time_ms: int
    close_time_ms: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    quote_volume: Decimal
    trade_count: int
    taker_buy_base_volume: Decimal
    taker_buy_quote_volume: Decimal

    def to_dict(self) -> dict:
        """Serialize for JSON responses; decimals become strings."""
        return {
            "openTime": ms_to_iso(self.open_time_ms),
            "closeTime": ms_to_iso(self.close_time_ms),
            "open": str(self.open),
            "high": str(self.high),
            "low": str(self.low),
            "close": str(self.close),
            "volume": str(self.volume),
            "quoteVolume": str(self.quote_volume),
            "trades": self.trade_count,
            "takerBuyBaseVolume": str(self.taker_buy_base_volume),
            "takerBuyQuoteVolume": str(self.taker_buy_quote_volume),
        }


@dataclass
class SymbolTimeframeExtent:
    """Cached earliest/latest/count of stored candles for a symbol/timeframe."""

    symbol: str
    timeframe: Timeframe
    earliest_ms: int | None
    latest_ms: int | None
    total_candles: int
    last_updated_ms: int | None = None

    @property
    def is_empty(self) -> bool:
        return self.earliest_ms is None or self.latest_ms is None


@dataclass
class SymbolRecord:
    """An instrument known to the engine."""

    symbol: str
    base_asset: str
    quote_asset: str
    is_active: bool = True
    updated_at_ms: int = field(default_factory=lambda: now_ms())


@dataclass(frozen=True)
class GapRange:
    """A sub-range to download. Both bounds are inclusive candle open times."""

    start_ms: int
    end_ms: int
    origin: GapOrigin


@dataclass
class SaveResult:
    """Outcome of a bulk candle upsert."""

    new_count: int = 0
    updated_count: int = 0
    failed_count: int = 0

    def __add__(self, other: "SaveResult") -> "SaveResult":
        return SaveResult(
            new_count=self.new_count + other.new_count,
            updated_count=self.updated_count + other.updated_count,
            failed_count=self.failed_count + other.failed_count,
        )


@dataclass
class DownloadJob:
    """Persistent record of one download job. Mutated only by its worker."""

    id: str
    symbol: str
    timeframe: Timeframe
    start_ms: int
    end_ms: int
    status: JobStatus = JobStatus.PENDING
    progress: float = 0.0
    processed_candles: int = 0
    total_candles: int = 0
    new_candles: int = 0
    updated_candles: int = 0
    error: str | None = None
    requested_by: str | None = None
    created_at_ms: int = field(default_factory=lambda: now_ms())
    started_at_ms: int | None = None
    completed_at_ms: int | None = None
    last_progress_at_ms: int | None = None

    def to_dict(self) -> dict:
        """Serialize for JSON responses."""
        return {
            "id": self.id,
            "symbol": self.symbol,
            "timeframe": self.timeframe.value,
            "startDate": ms_to_iso(self.start_ms),
            "endDate": ms_to_iso(self.end_ms),
            "status": self.status.value,
            "progress": self.progress,
            "processedCandles": self.processed_candles,
            "totalCandles": self.total_candles,
            "newCandles": self.new_candles,
            "updatedCandles": self.updated_candles,
            "error": self.error,
            "requestedBy": self.requested_by,
            "createdAt": ms_to_iso(self.created_at_ms),
            "startedAt": ms_to_iso(self.started_at_ms),
            "completedAt": ms_to_iso(self.completed_at_ms),
        }


@dataclass(frozen=True)
class JobRequest:
    """Payload delivered by the job queue to a worker."""

    job_id: str
    symbol: str
    timeframe: Timeframe
    start_ms: int
    end_ms: int

    @classmethod
    def from_payload(cls, payload: dict) -> "JobRequest":
        """Parse a {jobId, symbol, timeframe, startDate, endDate} queue payload."""
        try:
            return cls(
                job_id=str(payload["jobId"]),
                symbol=str(payload["symbol"]).upper(),
                timeframe=Timeframe.parse(payload["timeframe"]),
                start_ms=parse_iso_ms(payload["startDate"]),
                end_ms=parse_iso_ms(payload["endDate"]),
            )
        except KeyError as e:
            raise ValidationError(f"Job payload missing field {e}") from None

    def to_payload(self) -> dict:
        return {
            "jobId": self.job_id,
            "symbol": self.symbol,
            "timeframe": self.timeframe.value,
            "startDate": ms_to_iso(self.start_ms),
            "endDate": ms_to_iso(self.end_ms),
        }


def now_ms() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return int(time.time() * 1000)


def parse_iso_ms(value: str) -> int:
    """Parse an ISO-8601 timestamp into Unix milliseconds.

    Naive timestamps are treated as UTC. Raises ValidationError on bad input.
    """
    try:
        dt = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid ISO-8601 date '{value}'") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def ms_to_iso(value: int | None) -> str | None:
    """Format Unix milliseconds as an ISO-8601 UTC string."""
    if value is None:
        return None
    dt = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")
