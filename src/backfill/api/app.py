"""FastAPI application factory for the job API and WebSocket hub."""

from typing import Any

from fastapi import FastAPI

from backfill.api.routes import history, jobs, status, ws
from backfill.api.routes.ws import JobUpdateHub


def create_app(lifespan: Any = None, hub: JobUpdateHub | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        lifespan: Optional async context manager for application lifespan events.
                  Used by main.py to start and stop the background components.
        hub: WebSocket hub to expose; a fresh one is created if omitted.

    Route handlers read their services from app.state; job_service,
    symbol_status, weight_tracker and candle_store are attached by the caller.
    """
    app = FastAPI(
        title="Kline Backfill",
        lifespan=lifespan,
    )

    app.state.hub = hub if hub is not None else JobUpdateHub()

    app.include_router(jobs.router, prefix="/api")
    app.include_router(status.router, prefix="/api")
    app.include_router(history.router, prefix="/api")
    app.include_router(ws.router)

    return app
