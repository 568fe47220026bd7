"""Test doubles and candle builders shared across test packages."""

from decimal import Decimal

from backfill.jobs.progress import ProgressEvent, ProgressSink
from backfill.models import Candle, Timeframe

DAY_MS = 86_400_000
HOUR_MS = 3_600_000
BASE_MS = 1_700_000_000_000 - 1_700_000_000_000 % DAY_MS  # midnight UTC


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class RecordingSink(ProgressSink):
    """ProgressSink that keeps every published event."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    def publish(self, event: ProgressEvent) -> None:
        self.events.append(event)


def make_candle(
    open_time_ms: int,
    timeframe: Timeframe = Timeframe.H1,
    symbol: str = "BTCUSDT",
    close: str = "100.5",
) -> Candle:
    """Build a candle at the given open time with fixed prices."""
    return Candle(
        symbol=symbol,
        timeframe=timeframe,
        open_time_ms=open_time_ms,
        close_time_ms=open_time_ms + timeframe.interval_ms - 1,
        open=Decimal("100.0"),
        high=Decimal("101.25"),
        low=Decimal("99.75"),
        close=Decimal(close),
        volume=Decimal("12.345"),
        quote_volume=Decimal("1240.5"),
        trade_count=42,
        taker_buy_base_volume=Decimal("6.1"),
        taker_buy_quote_volume=Decimal("612.9"),
    )


def make_candles(
    start_ms: int, count: int, timeframe: Timeframe = Timeframe.H1, symbol: str = "BTCUSDT"
) -> list[Candle]:
    """count consecutive candles starting at start_ms."""
    return [
        make_candle(start_ms + i * timeframe.interval_ms, timeframe, symbol)
        for i in range(count)
    ]
