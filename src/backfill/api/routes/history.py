"""Read endpoints over stored candles and their extents."""

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from backfill.data.store import CandleStore
from backfill.exceptions import ValidationError
from backfill.models import Timeframe, ms_to_iso, parse_iso_ms

log = structlog.get_logger(__name__)

router = APIRouter()

MAX_LIMIT = 1500
DEFAULT_LIMIT = 1000


@router.get("/candles")
async def get_candles(
    request: Request,
    symbol: str,
    timeframe: str,
    start: str,
    end: str,
    limit: int = DEFAULT_LIMIT,
) -> JSONResponse:
    """Stored candles with open time in [start, end], ascending.

    `hasNext` tells whether more candles exist in the window after the
    returned page. `cursor` is the last returned open time; the next page
    starts one interval after it.
    """
    store: CandleStore = request.app.state.candle_store

    try:
        tf = Timeframe.parse(timeframe)
        start_ms = parse_iso_ms(start)
        end_ms = parse_iso_ms(end)
    except ValidationError as e:
        return JSONResponse(content={"error": str(e)}, status_code=400)
    if start_ms > end_ms:
        return JSONResponse(
            content={"error": "start must not be after end"}, status_code=400
        )
    if not 1 <= limit <= MAX_LIMIT:
        return JSONResponse(
            content={"error": f"limit must be between 1 and {MAX_LIMIT}"}, status_code=400
        )

    symbol = symbol.upper()
    candles = await store.get_candles(symbol, tf, start_ms, end_ms, limit + 1)
    has_next = len(candles) > limit
    candles = candles[:limit]

    if not candles:
        return JSONResponse(
            content={"error": f"No candles for {symbol} {tf.value} in the requested window"},
            status_code=404,
        )

    log.debug("candles_served", symbol=symbol, timeframe=tf.value, count=len(candles))
    return JSONResponse(
        content={
            "data": [c.to_dict() for c in candles],
            "meta": {
                "symbol": symbol,
                "timeframe": tf.value,
                "start": ms_to_iso(start_ms),
                "end": ms_to_iso(end_ms),
                "count": len(candles),
                "hasNext": has_next,
                "cursor": ms_to_iso(candles[-1].open_time_ms),
            },
        }
    )


@router.get("/symbols/{symbol}/{timeframe}/range")
async def get_data_range(request: Request, symbol: str, timeframe: str) -> JSONResponse:
    store: CandleStore = request.app.state.candle_store

    try:
        tf = Timeframe.parse(timeframe)
    except ValidationError as e:
        return JSONResponse(content={"error": str(e)}, status_code=400)

    symbol = symbol.upper()
    extent = await store.get_extent(symbol, tf)
    if extent is None or extent.is_empty:
        return JSONResponse(
            content={"error": f"No data for {symbol} {tf.value}"}, status_code=404
        )

    return JSONResponse(
        content={
            "symbol": symbol,
            "timeframe": tf.value,
            "earliest": ms_to_iso(extent.earliest_ms),
            "latest": ms_to_iso(extent.latest_ms),
            "totalCandles": extent.total_candles,
            "lastUpdated": ms_to_iso(extent.last_updated_ms),
        }
    )
