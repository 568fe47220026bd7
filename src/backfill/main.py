"""Entry point for the kline backfill engine.

Wires all components together and runs them either behind the FastAPI
server (default) or headless. With the API enabled, the workers and the
server share one asyncio event loop via uvicorn's programmatic API and
FastAPI's lifespan context manager.

Handles SIGINT/SIGTERM for graceful shutdown in headless mode; uvicorn
installs its own handlers otherwise.

Component wiring order (in _build_components):
1. CandleDatabase (shared aiosqlite connection)
2. CandleStore, JobStore, SymbolStore
3. BinanceClient and the shared WeightBudgetTracker
4. RetryingFetcher, GapAnalyzer, BatchPersister
5. JobUpdateHub and ProgressBroadcaster
6. CancellationRegistry and InProcessJobQueue
7. SymbolRegistry, JobService, SymbolStatusService
8. DownloadOrchestrator and DownloadWorkerPool
9. GapFillScheduler
"""

import asyncio
import signal
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI

from backfill.api.routes.ws import JobUpdateHub
from backfill.config import AppSettings
from backfill.data.database import CandleDatabase
from backfill.data.fetcher import RetryingFetcher
from backfill.data.gaps import GapAnalyzer
from backfill.data.persister import BatchPersister
from backfill.data.store import CandleStore
from backfill.exchange.binance_client import BinanceClient
from backfill.exchange.weight import WeightBudgetTracker
from backfill.jobs.cancellation import CancellationRegistry
from backfill.jobs.gap_fill import GapFillScheduler
from backfill.jobs.orchestrator import DownloadOrchestrator
from backfill.jobs.progress import ProgressBroadcaster
from backfill.jobs.service import JobService
from backfill.jobs.store import JobStore
from backfill.jobs.worker import DownloadWorkerPool, InProcessJobQueue
from backfill.logging import get_logger, setup_logging
from backfill.symbols.registry import SymbolRegistry
from backfill.symbols.status import SymbolStatusService
from backfill.symbols.store import SymbolStore


def _build_components(settings: AppSettings) -> dict[str, Any]:
    """Build all components from settings.

    Note: Does NOT open the database or the exchange session -- that
    happens in _start_components().
    """
    database = CandleDatabase(settings.storage.db_path)
    candle_store = CandleStore(database)
    job_store = JobStore(database)
    symbol_store = SymbolStore(database)

    client = BinanceClient(settings.binance)
    weight_tracker = WeightBudgetTracker(
        limit=settings.binance.weight_limit,
        window_seconds=settings.binance.weight_window_seconds,
    )

    fetcher = RetryingFetcher(
        client,
        weight_tracker,
        max_attempts=settings.binance.max_attempts,
        retry_base_delay=settings.binance.retry_base_delay,
        page_limit=settings.binance.page_limit,
        page_delay=settings.binance.page_delay,
    )
    gap_analyzer = GapAnalyzer(candle_store)
    persister = BatchPersister(
        candle_store,
        chunk_size=settings.storage.chunk_size,
        max_attempts=settings.storage.max_attempts,
        retry_base_delay=settings.storage.retry_base_delay,
        recompute_threshold=settings.storage.extent_recompute_threshold,
    )

    hub = JobUpdateHub()
    broadcaster = ProgressBroadcaster(hub)

    cancellation = CancellationRegistry()
    queue = InProcessJobQueue()

    symbol_registry = SymbolRegistry(
        symbol_store,
        client,
        weight_tracker,
        exchange_info_weight=settings.binance.exchange_info_weight,
    )
    job_service = JobService(job_store, symbol_registry, queue, cancellation, broadcaster)
    symbol_status = SymbolStatusService(symbol_store, candle_store, job_service)

    orchestrator = DownloadOrchestrator(
        job_store=job_store,
        candle_store=candle_store,
        gap_analyzer=gap_analyzer,
        fetcher=fetcher,
        persister=persister,
        sink=broadcaster,
        cancellation=cancellation,
    )
    worker_pool = DownloadWorkerPool(
        queue,
        orchestrator,
        job_store,
        concurrency=settings.worker.concurrency,
        requeue_on_startup=settings.worker.requeue_on_startup,
    )

    gap_fill = GapFillScheduler(
        settings.gap_fill,
        symbol_store,
        candle_store,
        gap_analyzer,
        job_service,
    )

    return {
        "database": database,
        "client": client,
        "weight_tracker": weight_tracker,
        "hub": hub,
        "broadcaster": broadcaster,
        "job_service": job_service,
        "symbol_status": symbol_status,
        "candle_store": candle_store,
        "worker_pool": worker_pool,
        "gap_fill": gap_fill,
    }


async def _start_components(components: dict[str, Any]) -> None:
    await components["database"].connect()
    await components["client"].connect()
    await components["broadcaster"].start()
    await components["worker_pool"].start()
    await components["gap_fill"].start()


async def _stop_components(components: dict[str, Any]) -> None:
    """Stop in reverse start order, draining queued progress events before closing."""
    await components["gap_fill"].stop()
    await components["worker_pool"].stop()
    await components["broadcaster"].stop()
    await components["client"].close()
    await components["database"].close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage component lifecycle within the FastAPI application."""
    logger = get_logger("backfill.main")
    components = app.state.components

    app.state.job_service = components["job_service"]
    app.state.symbol_status = components["symbol_status"]
    app.state.weight_tracker = components["weight_tracker"]
    app.state.candle_store = components["candle_store"]

    await _start_components(components)
    logger.info("lifespan_started")

    yield

    await _stop_components(components)
    logger.info("kline_backfill_stopped")


async def _run_headless(components: dict[str, Any]) -> None:
    """Run the workers without a web server until SIGINT/SIGTERM."""
    logger = get_logger("backfill.main")
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)

    await _start_components(components)
    try:
        await stop_event.wait()
    finally:
        await _stop_components(components)
        logger.info("kline_backfill_stopped")


async def run() -> None:
    """Run the kline backfill engine."""
    # 1. Load settings
    settings = AppSettings()

    # 2. Setup logging
    setup_logging(settings.log_level, settings.log_format)
    logger = get_logger("backfill.main")

    components = _build_components(settings)

    if settings.api.enabled:
        from backfill.api.app import create_app

        app = create_app(lifespan=lifespan, hub=components["hub"])
        app.state.settings = settings
        app.state.components = components

        logger.info(
            "starting_with_api",
            host=settings.api.host,
            port=settings.api.port,
            workers=settings.worker.concurrency,
        )

        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level="warning",  # Suppress uvicorn access logs
        )
        server = uvicorn.Server(config)
        await server.serve()
    else:
        logger.info("starting_without_api", workers=settings.worker.concurrency)
        await _run_headless(components)


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
