"""Missing-range detection for a requested download window.

Reconciles the requested window with the cached extent of what is already
stored and with the stored open times themselves. Range bounds are inclusive
candle open times; a range never includes a candle that is already stored
at its edge.

The extent cache can drift from the candle table. The only check against
that here is the single-sample verification query for requests that look
fully covered.
"""

from backfill.data.store import CandleStore
from backfill.logging import get_logger
from backfill.models import GapOrigin, GapRange, Timeframe

logger = get_logger(__name__)

_DAY_MS = 86_400_000


def _interior_gaps(open_times: list[int], interval_ms: int, lo: int, hi: int) -> list[GapRange]:
    """Ranges between adjacent open times more than two intervals apart.

    A single missing candle (exactly two intervals between neighbours) is
    tolerated, matching how exchanges skip candles during maintenance.
    """
    gaps: list[GapRange] = []
    for prev, nxt in zip(open_times, open_times[1:]):
        if nxt - prev > 2 * interval_ms:
            start = max(prev + interval_ms, lo)
            end = min(nxt - interval_ms, hi)
            if start <= end:
                gaps.append(GapRange(start, end, GapOrigin.INTERIOR_GAP))
    return gaps


class GapAnalyzer:
    """Computes the sub-ranges of a request that must be downloaded."""

    def __init__(self, store: CandleStore) -> None:
        self._store = store

    async def compute_ranges(
        self,
        symbol: str,
        timeframe: Timeframe,
        requested_start_ms: int,
        requested_end_ms: int,
        existing_earliest_ms: int | None,
        existing_latest_ms: int | None,
    ) -> list[GapRange]:
        """Return the ranges to fetch, ordered before -> interior -> after.

        Args:
            symbol: Instrument symbol (e.g. "BTCUSDT").
            timeframe: Candle interval.
            requested_start_ms: First open time wanted (inclusive).
            requested_end_ms: Last open time wanted (inclusive).
            existing_earliest_ms: Earliest stored open time per the extent cache.
            existing_latest_ms: Latest stored open time per the extent cache.
        """
        interval = timeframe.interval_ms

        if existing_earliest_ms is None or existing_latest_ms is None:
            return [GapRange(requested_start_ms, requested_end_ms, GapOrigin.BEFORE_EXISTING)]

        before: list[GapRange] = []
        after: list[GapRange] = []
        interior: list[GapRange] = []

        if requested_start_ms < existing_earliest_ms:
            end = min(existing_earliest_ms - interval, requested_end_ms)
            if requested_start_ms <= end:
                before.append(GapRange(requested_start_ms, end, GapOrigin.BEFORE_EXISTING))

        if requested_end_ms > existing_latest_ms:
            start = max(existing_latest_ms + interval, requested_start_ms)
            if start <= requested_end_ms:
                after.append(GapRange(start, requested_end_ms, GapOrigin.AFTER_EXISTING))

        overlap_start = max(requested_start_ms, existing_earliest_ms)
        overlap_end = min(requested_end_ms, existing_latest_ms)
        if overlap_start <= overlap_end:
            open_times = await self._store.list_open_times(
                symbol, timeframe, overlap_start, overlap_end
            )
            # Stored neighbours outside the overlap bound holes that cross its edges
            prev, nxt = await self._store.neighbour_open_times(
                symbol, timeframe, overlap_start, overlap_end
            )
            if prev is not None:
                open_times.insert(0, prev)
            if nxt is not None:
                open_times.append(nxt)
            interior = _interior_gaps(open_times, interval, overlap_start, overlap_end)

        ranges = before + interior + after

        fully_inside = (
            existing_earliest_ms <= requested_start_ms
            and requested_end_ms <= existing_latest_ms
        )
        if not ranges and fully_inside:
            sample = await self._store.first_open_time(
                symbol, timeframe, requested_start_ms, requested_start_ms + interval - 1
            )
            if sample is None:
                logger.warning(
                    "extent_verification_failed",
                    symbol=symbol,
                    timeframe=timeframe.value,
                    requested_start_ms=requested_start_ms,
                )
                ranges = [
                    GapRange(
                        requested_start_ms,
                        requested_end_ms,
                        GapOrigin.VERIFICATION_REDOWNLOAD,
                    )
                ]

        logger.debug(
            "gap_ranges_computed",
            symbol=symbol,
            timeframe=timeframe.value,
            ranges=[(r.start_ms, r.end_ms, r.origin.value) for r in ranges],
        )
        return ranges

    async def find_recent_gaps(
        self,
        symbol: str,
        timeframe: Timeframe,
        now_ms: int,
        lookback_days: int = 1,
    ) -> list[GapRange]:
        """Holes in the last `lookback_days` of stored data up to the last closed candle.

        Used by the periodic gap-fill check. Unlike compute_ranges this reads
        the candle table directly instead of trusting the extent cache.
        """
        interval = timeframe.interval_ms
        check_from = now_ms - lookback_days * _DAY_MS
        # Open time of the candle that is still forming
        current_open = now_ms - now_ms % interval
        last_closed = current_open - interval

        open_times = await self._store.list_open_times(symbol, timeframe, check_from, now_ms)
        if not open_times:
            return [GapRange(check_from, last_closed, GapOrigin.BEFORE_EXISTING)]

        gaps: list[GapRange] = []
        if open_times[0] > check_from + interval:
            gaps.append(
                GapRange(check_from, open_times[0] - interval, GapOrigin.BEFORE_EXISTING)
            )

        gaps.extend(_interior_gaps(open_times, interval, check_from, now_ms))

        if open_times[-1] < last_closed:
            gaps.append(
                GapRange(open_times[-1] + interval, last_closed, GapOrigin.AFTER_EXISTING)
            )
        return gaps
