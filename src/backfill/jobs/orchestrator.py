"""Download orchestrator -- runs one job from gap analysis to final status.

For each job:
  1. Mark the job RUNNING (PENDING, or RUNNING left behind by a dead worker)
  2. Ask the GapAnalyzer which sub-ranges are missing
  3. For each range: fetch every page, then persist the range
  4. Finish as COMPLETED, FAILED or CANCELLED

Progress is weighted by the time span each range covers, so a one-day gap
and a one-year gap do not count the same. Published progress never goes
backwards.
"""

from dataclasses import dataclass

from backfill.data.fetcher import RetryingFetcher
from backfill.data.gaps import GapAnalyzer
from backfill.data.persister import BatchPersister
from backfill.data.store import CandleStore
from backfill.exceptions import JobCancelledError
from backfill.jobs.cancellation import CancellationRegistry
from backfill.jobs.progress import ProgressEvent, ProgressSink
from backfill.jobs.store import JobStore
from backfill.logging import get_logger
from backfill.models import DownloadJob, GapRange, JobRequest, JobStatus, Timeframe

logger = get_logger(__name__)


@dataclass
class _RunState:
    """Counters accumulated while a job runs."""

    persisted: int = 0
    new: int = 0
    updated: int = 0
    completed_percent: float = 0.0


def _range_weights(
    ranges: list[GapRange], timeframe: Timeframe, request_start: int, request_end: int
) -> list[float]:
    """Fraction of the requested span covered by each range (inclusive spans)."""
    interval = timeframe.interval_ms
    request_span = max(interval, request_end - request_start + interval)
    return [(r.end_ms - r.start_ms + interval) / request_span for r in ranges]


def _estimated_candles(ranges: list[GapRange], timeframe: Timeframe) -> int:
    interval = timeframe.interval_ms
    return sum((r.end_ms - r.start_ms) // interval + 1 for r in ranges)


class DownloadOrchestrator:
    """Runs download jobs delivered by the job queue.

    Args:
        job_store: Job record persistence.
        candle_store: Candle storage (extent lookup).
        gap_analyzer: Missing-range detection.
        fetcher: Paginated upstream fetcher.
        persister: Chunked candle writer.
        sink: Where progress events go.
        cancellation: Shared cancellation flags.
    """

    def __init__(
        self,
        job_store: JobStore,
        candle_store: CandleStore,
        gap_analyzer: GapAnalyzer,
        fetcher: RetryingFetcher,
        persister: BatchPersister,
        sink: ProgressSink,
        cancellation: CancellationRegistry,
    ) -> None:
        self._jobs = job_store
        self._candles = candle_store
        self._gaps = gap_analyzer
        self._fetcher = fetcher
        self._persister = persister
        self._sink = sink
        self._cancellation = cancellation

    # ──────────────────────────────────────────────
    # Public methods
    # ──────────────────────────────────────────────

    async def run(self, request: JobRequest) -> DownloadJob | None:
        """Execute one job to a terminal state.

        Returns the final job record, or None if the job id is unknown.
        Jobs that are already terminal are returned untouched (duplicate
        delivery). Never raises for job-level failures; they end as FAILED.
        """
        job = await self._jobs.get(request.job_id)
        if job is None:
            logger.warning("job_not_found", job_id=request.job_id)
            return None

        if job.status.is_terminal:
            logger.info("job_already_terminal", job_id=job.id, status=job.status.value)
            return job

        reclaimed = job.status == JobStatus.RUNNING
        if not await self._jobs.mark_started(job.id):
            # Cancelled between delivery and pickup
            logger.info("job_not_startable", job_id=job.id)
            return await self._jobs.get(job.id)

        job.status = JobStatus.RUNNING
        logger.info(
            "job_started",
            job_id=job.id,
            symbol=job.symbol,
            timeframe=job.timeframe.value,
            start_ms=job.start_ms,
            end_ms=job.end_ms,
            reclaimed=reclaimed,
        )
        self._sink.publish(ProgressEvent.for_job(job, "Starting download"))

        state = _RunState()
        try:
            await self._execute(job, state)
        except JobCancelledError:
            await self._finish_cancelled(job, state)
        except Exception as e:
            await self._finish_failed(job, state, e)
        finally:
            self._cancellation.clear(job.id)

        return job

    # ──────────────────────────────────────────────
    # Internal
    # ──────────────────────────────────────────────

    async def _execute(self, job: DownloadJob, state: _RunState) -> None:
        extent = await self._candles.get_extent(job.symbol, job.timeframe)
        ranges = await self._gaps.compute_ranges(
            job.symbol,
            job.timeframe,
            job.start_ms,
            job.end_ms,
            extent.earliest_ms if extent else None,
            extent.latest_ms if extent else None,
        )

        if not ranges:
            await self._finish_completed(job, state, "All data already exists")
            return

        weights = _range_weights(ranges, job.timeframe, job.start_ms, job.end_ms)
        job.total_candles = _estimated_candles(ranges, job.timeframe)

        logger.info(
            "job_ranges_planned",
            job_id=job.id,
            ranges=len(ranges),
            estimated_candles=job.total_candles,
        )

        for index, (gap, weight) in enumerate(zip(ranges, weights)):
            self._check_cancelled(job.id)
            await self._download_range(job, state, index, len(ranges), gap, weight)

        self._check_cancelled(job.id)
        await self._finish_completed(job, state, "Download completed")

    async def _download_range(
        self,
        job: DownloadJob,
        state: _RunState,
        index: int,
        count: int,
        gap: GapRange,
        weight: float,
    ) -> None:
        label = f"range {index + 1}/{count}"

        async def on_progress(local_percent: float, fetched: int) -> None:
            overall = state.completed_percent + weight * local_percent
            await self._report(
                job,
                state,
                overall,
                state.persisted + fetched,
                f"Downloading {label} ({gap.origin.value}): {fetched} candles",
            )

        candles = await self._fetcher.fetch_range(
            job.symbol,
            job.timeframe,
            gap.start_ms,
            gap.end_ms,
            on_progress,
            should_cancel=lambda: self._cancellation.is_requested(job.id),
        )

        if candles:
            self._sink.publish(
                ProgressEvent.for_job(job, f"Saving {len(candles)} candles for {label}")
            )
            result = await self._persister.save(job.symbol, job.timeframe, candles)
            state.persisted += len(candles)
            state.new += result.new_count
            state.updated += result.updated_count
            logger.info(
                "range_persisted",
                job_id=job.id,
                origin=gap.origin.value,
                start_ms=gap.start_ms,
                end_ms=gap.end_ms,
                fetched=len(candles),
                new=result.new_count,
                updated=result.updated_count,
                failed=result.failed_count,
            )
        else:
            logger.info(
                "range_empty",
                job_id=job.id,
                origin=gap.origin.value,
                start_ms=gap.start_ms,
                end_ms=gap.end_ms,
            )

        state.completed_percent += weight * 100
        await self._report(
            job, state, state.completed_percent, state.persisted, f"Finished {label}"
        )

    async def _report(
        self, job: DownloadJob, state: _RunState, percent: float, processed: int, message: str
    ) -> None:
        """Persist and publish progress, never letting it decrease."""
        job.progress = max(job.progress, round(min(100.0, percent), 2))
        job.processed_candles = processed
        job.new_candles = state.new
        job.updated_candles = state.updated
        await self._jobs.update_progress(
            job.id,
            job.progress,
            job.processed_candles,
            job.total_candles,
            job.new_candles,
            job.updated_candles,
        )
        self._sink.publish(ProgressEvent.for_job(job, message))

    def _check_cancelled(self, job_id: str) -> None:
        if self._cancellation.is_requested(job_id):
            raise JobCancelledError(f"Job {job_id} cancelled")

    async def _finish_completed(self, job: DownloadJob, state: _RunState, message: str) -> None:
        await self._jobs.mark_completed(job.id, state.persisted, state.new, state.updated)
        job.status = JobStatus.COMPLETED
        job.progress = 100.0
        job.processed_candles = state.persisted
        job.total_candles = state.persisted
        job.new_candles = state.new
        job.updated_candles = state.updated
        logger.info(
            "job_completed",
            job_id=job.id,
            processed=state.persisted,
            new=state.new,
            updated=state.updated,
        )
        self._sink.publish(ProgressEvent.for_job(job, message))

    async def _finish_cancelled(self, job: DownloadJob, state: _RunState) -> None:
        await self._jobs.mark_cancelled(job.id, state.persisted, state.new, state.updated)
        job.status = JobStatus.CANCELLED
        job.processed_candles = state.persisted
        job.new_candles = state.new
        job.updated_candles = state.updated
        logger.info("job_cancelled", job_id=job.id, processed=state.persisted)
        self._sink.publish(ProgressEvent.for_job(job, "Download cancelled"))

    async def _finish_failed(self, job: DownloadJob, state: _RunState, error: Exception) -> None:
        message = str(error) or type(error).__name__
        await self._jobs.mark_failed(job.id, message, state.persisted, state.new, state.updated)
        job.status = JobStatus.FAILED
        job.error = message
        job.processed_candles = state.persisted
        job.new_candles = state.new
        job.updated_candles = state.updated
        logger.error(
            "job_failed",
            job_id=job.id,
            error=message,
            processed=state.persisted,
            exc_info=True,
        )
        self._sink.publish(ProgressEvent.for_job(job, "Download failed"))
