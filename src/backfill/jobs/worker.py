"""Job queue interface and the worker pool that drains it.

Delivery is at-least-once: a job can be handed to a worker again after a
restart, and the orchestrator skips or reclaims it based on its stored
status. Queue payloads are plain dicts ({jobId, symbol, timeframe,
startDate, endDate}) so a durable broker can replace the in-process queue
without touching the workers.
"""

import asyncio
from abc import ABC, abstractmethod

from structlog.contextvars import bound_contextvars

from backfill.exceptions import ValidationError
from backfill.jobs.orchestrator import DownloadOrchestrator
from backfill.jobs.store import JobStore
from backfill.logging import get_logger
from backfill.models import JobRequest

logger = get_logger(__name__)


class JobQueue(ABC):
    """Transport for download job payloads."""

    @abstractmethod
    async def enqueue(self, request: JobRequest) -> None:
        ...

    @abstractmethod
    async def dequeue(self) -> dict:
        """Wait for and return the next raw payload."""
        ...

    @abstractmethod
    def task_done(self) -> None:
        """Acknowledge the payload last returned by dequeue()."""
        ...


class InProcessJobQueue(JobQueue):
    """asyncio.Queue adapter. Payloads are lost on restart; the worker pool
    re-enqueues active jobs from the database at startup to compensate."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[dict] = asyncio.Queue()

    async def enqueue(self, request: JobRequest) -> None:
        await self._queue.put(request.to_payload())

    async def dequeue(self) -> dict:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        """Wait until every enqueued payload has been acknowledged."""
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()


class DownloadWorkerPool:
    """Runs N workers, each executing one job at a time.

    Args:
        queue: Source of job payloads.
        orchestrator: Executes a single job.
        job_store: Used at startup to re-enqueue unfinished jobs.
        concurrency: Number of jobs run in parallel.
        requeue_on_startup: Re-enqueue PENDING/RUNNING jobs when started.
    """

    def __init__(
        self,
        queue: JobQueue,
        orchestrator: DownloadOrchestrator,
        job_store: JobStore,
        concurrency: int = 2,
        requeue_on_startup: bool = True,
    ) -> None:
        self._queue = queue
        self._orchestrator = orchestrator
        self._job_store = job_store
        self._concurrency = max(1, concurrency)
        self._requeue_on_startup = requeue_on_startup
        self._tasks: list[asyncio.Task] = []  # type: ignore[type-arg]
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Re-enqueue unfinished jobs, then start the worker tasks."""
        if self._running:
            logger.warning("worker_pool_already_running")
            return

        if self._requeue_on_startup:
            unfinished = await self._job_store.list_active()
            for job in unfinished:
                await self._queue.enqueue(
                    JobRequest(job.id, job.symbol, job.timeframe, job.start_ms, job.end_ms)
                )
            if unfinished:
                logger.info("unfinished_jobs_requeued", count=len(unfinished))

        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker_loop(i)) for i in range(self._concurrency)
        ]
        logger.info("worker_pool_started", concurrency=self._concurrency)

    async def stop(self) -> None:
        """Cancel all workers. Jobs interrupted mid-run stay RUNNING and are
        reclaimed on the next start."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("worker_pool_stopped")

    async def _worker_loop(self, worker_id: int) -> None:
        while self._running:
            payload = await self._queue.dequeue()
            try:
                await self._handle(worker_id, payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.error(
                    "worker_job_error",
                    worker_id=worker_id,
                    job_id=payload.get("jobId"),
                    exc_info=True,
                )
            finally:
                self._queue.task_done()

    async def _handle(self, worker_id: int, payload: dict) -> None:
        try:
            request = JobRequest.from_payload(payload)
        except ValidationError as e:
            logger.error("invalid_job_payload", worker_id=worker_id, error=str(e))
            return

        with bound_contextvars(
            job_id=request.job_id,
            symbol=request.symbol,
            timeframe=request.timeframe.value,
        ):
            job = await self._orchestrator.run(request)
            logger.info(
                "worker_job_finished",
                worker_id=worker_id,
                status=job.status.value if job else None,
            )
