"""Job creation, cancellation and queries.

create_job validates the request, makes sure the symbol exists upstream,
refuses a second active job for the same symbol/timeframe, stores the job
as PENDING and hands it to the queue. Workers pick it up from there.
"""

import uuid
from datetime import datetime

from backfill.exceptions import DuplicateJobError, JobNotFoundError, JobStateError, ValidationError
from backfill.jobs.cancellation import CancellationRegistry
from backfill.jobs.progress import ProgressEvent, ProgressSink
from backfill.jobs.store import JobStore
from backfill.jobs.worker import JobQueue
from backfill.logging import get_logger
from backfill.models import DownloadJob, JobRequest, JobStatus, Timeframe, now_ms, parse_iso_ms
from backfill.symbols.registry import SymbolRegistry
from backfill.symbols.status import ActiveJobLookup

logger = get_logger(__name__)


def _to_ms(value: str | int | datetime, name: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {name}")
    if isinstance(value, int):
        return value
    if isinstance(value, datetime):
        return parse_iso_ms(value.isoformat())
    return parse_iso_ms(value)


class JobService(ActiveJobLookup):
    """Entry point for everything that creates or inspects download jobs."""

    def __init__(
        self,
        job_store: JobStore,
        symbol_registry: SymbolRegistry,
        queue: JobQueue,
        cancellation: CancellationRegistry,
        sink: ProgressSink,
    ) -> None:
        self._jobs = job_store
        self._symbols = symbol_registry
        self._queue = queue
        self._cancellation = cancellation
        self._sink = sink

    # ──────────────────────────────────────────────
    # Commands
    # ──────────────────────────────────────────────

    async def create_job(
        self,
        symbol: str,
        timeframe: str | Timeframe,
        start_date: str | int | datetime,
        end_date: str | int | datetime,
        requested_by: str | None = None,
    ) -> DownloadJob:
        """Validate, register and enqueue a new download job.

        Raises:
            ValidationError: Unknown timeframe, unparseable dates, or an
                empty/inverted window.
            InvalidSymbolError: Symbol not listed upstream.
            DuplicateJobError: A pending/running job already covers this
                symbol and timeframe.
        """
        if not symbol or not symbol.strip():
            raise ValidationError("Symbol is required")
        symbol = symbol.strip().upper()
        tf = timeframe if isinstance(timeframe, Timeframe) else Timeframe.parse(timeframe)
        start_ms = _to_ms(start_date, "start date")
        end_ms = _to_ms(end_date, "end date")
        if start_ms >= end_ms:
            raise ValidationError("Start date must be before end date")
        if start_ms > now_ms():
            raise ValidationError("Start date is in the future")

        existing = await self._jobs.find_active(symbol, tf)
        if existing is not None:
            raise DuplicateJobError(
                f"Job {existing.id} is already {existing.status.value} for {symbol} {tf.value}"
            )

        await self._symbols.ensure_symbol(symbol)

        job = DownloadJob(
            id=str(uuid.uuid4()),
            symbol=symbol,
            timeframe=tf,
            start_ms=start_ms,
            end_ms=end_ms,
            requested_by=requested_by,
        )
        # The partial unique index catches a concurrent create that passed the check above
        await self._jobs.insert(job)
        await self._queue.enqueue(JobRequest(job.id, symbol, tf, start_ms, end_ms))

        logger.info(
            "job_created",
            job_id=job.id,
            symbol=symbol,
            timeframe=tf.value,
            start_ms=start_ms,
            end_ms=end_ms,
            requested_by=requested_by,
        )
        self._sink.publish(ProgressEvent.for_job(job, "Job queued"))
        return job

    async def cancel_job(self, job_id: str) -> DownloadJob:
        """Cancel a pending or running job.

        A pending job is cancelled immediately. A running job is flagged and
        stops at its next page or range boundary; the returned record still
        shows RUNNING until then.

        Raises:
            JobNotFoundError: Unknown job id.
            JobStateError: The job already finished.
        """
        job = await self.get_job(job_id)
        if job.status.is_terminal:
            raise JobStateError(f"Job {job_id} is already {job.status.value}")

        if job.status == JobStatus.PENDING and await self._jobs.cancel_pending(job_id):
            job = await self.get_job(job_id)
            logger.info("job_cancelled_before_start", job_id=job_id)
            self._sink.publish(ProgressEvent.for_job(job, "Download cancelled"))
            return job

        # Running, or picked up by a worker since it was read
        self._cancellation.request(job_id)
        job = await self.get_job(job_id)
        if job.status.is_terminal:
            # Finished before the flag was set; nothing will consume it
            self._cancellation.clear(job_id)
            logger.info("job_finished_before_cancellation", job_id=job_id, status=job.status.value)
            return job

        logger.info("job_cancellation_requested", job_id=job_id)
        return job

    # ──────────────────────────────────────────────
    # Queries
    # ──────────────────────────────────────────────

    async def get_job(self, job_id: str) -> DownloadJob:
        job = await self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def list_jobs(
        self,
        status: str | JobStatus | None = None,
        symbol: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DownloadJob]:
        if isinstance(status, str):
            try:
                status = JobStatus(status)
            except ValueError:
                raise ValidationError(f"Unknown job status '{status}'") from None
        return await self._jobs.list_jobs(
            status=status,
            symbol=symbol.upper() if symbol else None,
            limit=max(1, min(limit, 500)),
            offset=max(0, offset),
        )

    async def get_active_jobs(self) -> list[DownloadJob]:
        return await self._jobs.list_active()

    async def get_statistics(self) -> dict[str, int]:
        """Job counts per status plus a total."""
        counts = await self._jobs.count_by_status()
        stats = {status.value: count for status, count in counts.items()}
        stats["total"] = sum(counts.values())
        return stats

    async def find_active_job(self, symbol: str, timeframe: Timeframe) -> DownloadJob | None:
        return await self._jobs.find_active(symbol, timeframe)
