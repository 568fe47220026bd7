"""Periodic detection and repair of holes in recently stored history.

Every interval, each active symbol/timeframe that already has data is
scanned over the last few days. When holes are found, one download job
covering all of them is created; the orchestrator's own gap analysis then
fetches only what is missing.
"""

import asyncio
from collections.abc import Awaitable, Callable

from backfill.config import GapFillSettings
from backfill.data.gaps import GapAnalyzer
from backfill.data.store import CandleStore
from backfill.exceptions import BackfillError, DuplicateJobError
from backfill.jobs.service import JobService
from backfill.logging import get_logger
from backfill.models import DownloadJob, now_ms
from backfill.symbols.store import SymbolStore

logger = get_logger(__name__)

REQUESTED_BY = "gap-fill"


class GapFillScheduler:
    """Background loop creating repair jobs for recent gaps."""

    def __init__(
        self,
        settings: GapFillSettings,
        symbol_store: SymbolStore,
        candle_store: CandleStore,
        gap_analyzer: GapAnalyzer,
        job_service: JobService,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._symbols = symbol_store
        self._candles = candle_store
        self._gaps = gap_analyzer
        self._jobs = job_service
        self._sleep = sleep
        self._running = False
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    async def start(self) -> None:
        if not self._settings.enabled:
            logger.info("gap_fill_disabled")
            return
        if self._running:
            logger.warning("gap_fill_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "gap_fill_started",
            interval_hours=self._settings.interval_hours,
            lookback_days=self._settings.lookback_days,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("gap_fill_stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await self.check_all()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("gap_fill_check_error", exc_info=True)
            if self._running:
                await self._sleep(self._settings.interval_hours * 3600)

    async def check_all(self, current_ms: int | None = None) -> list[DownloadJob]:
        """Scan every active symbol/timeframe with data; return the jobs created."""
        current_ms = current_ms if current_ms is not None else now_ms()
        created: list[DownloadJob] = []
        checked = 0

        for record in await self._symbols.list_symbols(active_only=True):
            for extent in await self._candles.list_extents(record.symbol):
                if extent.is_empty:
                    continue
                if checked and self._settings.pause_between_checks > 0:
                    await self._sleep(self._settings.pause_between_checks)
                checked += 1

                gaps = await self._gaps.find_recent_gaps(
                    record.symbol,
                    extent.timeframe,
                    current_ms,
                    self._settings.lookback_days,
                )
                if not gaps:
                    continue

                interval = extent.timeframe.interval_ms
                start = min(g.start_ms for g in gaps)
                end = max(max(g.end_ms for g in gaps), start + interval - 1)
                logger.info(
                    "recent_gaps_found",
                    symbol=record.symbol,
                    timeframe=extent.timeframe.value,
                    gaps=len(gaps),
                    start_ms=start,
                    end_ms=end,
                )

                try:
                    job = await self._jobs.create_job(
                        record.symbol,
                        extent.timeframe,
                        start,
                        end,
                        requested_by=REQUESTED_BY,
                    )
                except DuplicateJobError:
                    logger.info(
                        "gap_fill_skipped_active_job",
                        symbol=record.symbol,
                        timeframe=extent.timeframe.value,
                    )
                    continue
                except BackfillError as e:
                    logger.warning(
                        "gap_fill_job_rejected",
                        symbol=record.symbol,
                        timeframe=extent.timeframe.value,
                        error=str(e),
                    )
                    continue
                created.append(job)

        logger.info("gap_fill_check_complete", checked=checked, jobs_created=len(created))
        return created
