"""Read-only status endpoints: upstream weight usage and per-symbol data status."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from backfill.exchange.weight import WeightBudgetTracker
from backfill.symbols.status import SymbolStatusService

router = APIRouter()


@router.get("/weight")
async def get_weight_usage(request: Request) -> JSONResponse:
    """Current request-weight usage against the upstream limit."""
    tracker: WeightBudgetTracker = request.app.state.weight_tracker
    usage = tracker.snapshot()
    return JSONResponse(
        content={
            "used": usage.used,
            "limit": usage.limit,
            "remaining": max(0, usage.limit - usage.used),
            "resetsInSeconds": round(usage.resets_in_seconds, 3),
        }
    )


@router.get("/symbols")
async def list_symbol_statuses(request: Request, active_only: bool = True) -> JSONResponse:
    """Known symbols with their stored extents and in-flight downloads."""
    service: SymbolStatusService = request.app.state.symbol_status
    statuses = await service.list_statuses(active_only=active_only)
    return JSONResponse(content=[s.to_dict() for s in statuses])


@router.get("/symbols/{symbol}")
async def get_symbol_status(request: Request, symbol: str) -> JSONResponse:
    service: SymbolStatusService = request.app.state.symbol_status
    status = await service.get_status(symbol)
    if status is None:
        return JSONResponse(content={"error": f"Unknown symbol {symbol}"}, status_code=404)
    return JSONResponse(content=status.to_dict())
