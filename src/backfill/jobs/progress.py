"""Job progress events and their fan-out to observers.

The orchestrator publishes through the ProgressSink interface only. The
default sink, ProgressBroadcaster, queues events and delivers them from a
background task, so a slow or broken observer never stalls a download.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from backfill.logging import get_logger
from backfill.models import DownloadJob, JobStatus, ms_to_iso, now_ms

logger = get_logger(__name__)


class ProgressEventType(str, Enum):
    """Event names delivered to subscribers."""

    UPDATE = "job-update"
    COMPLETED = "job-completed"
    FAILED = "job-failed"
    CANCELLED = "job-cancelled"


_TERMINAL_EVENT = {
    JobStatus.COMPLETED: ProgressEventType.COMPLETED,
    JobStatus.FAILED: ProgressEventType.FAILED,
    JobStatus.CANCELLED: ProgressEventType.CANCELLED,
}


@dataclass(frozen=True)
class ProgressEvent:
    """Snapshot of a job's progress at one moment."""

    job_id: str
    status: JobStatus
    progress: float
    processed_candles: int
    total_candles: int
    message: str
    symbol: str
    timeframe: str
    error: str | None = None
    timestamp_ms: int = field(default_factory=now_ms)

    @property
    def event_type(self) -> ProgressEventType:
        return _TERMINAL_EVENT.get(self.status, ProgressEventType.UPDATE)

    @classmethod
    def for_job(cls, job: DownloadJob, message: str) -> "ProgressEvent":
        """Build an event from the current state of a job record."""
        return cls(
            job_id=job.id,
            status=job.status,
            progress=job.progress,
            processed_candles=job.processed_candles,
            total_candles=job.total_candles,
            message=message,
            symbol=job.symbol,
            timeframe=job.timeframe.value,
            error=job.error,
        )

    def to_payload(self) -> dict:
        payload = {
            "event": self.event_type.value,
            "jobId": self.job_id,
            "status": self.status.value,
            "progress": self.progress,
            "processedCandles": self.processed_candles,
            "totalCandles": self.total_candles,
            "message": self.message,
            "symbol": self.symbol,
            "timeframe": self.timeframe,
            "timestamp": ms_to_iso(self.timestamp_ms),
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


class ProgressSink(ABC):
    """Where the orchestrator reports progress."""

    @abstractmethod
    def publish(self, event: ProgressEvent) -> None:
        """Hand off an event. Must not block and must not raise."""


class EventTransport(ABC):
    """Delivers events to connected observers (WebSocket, message bus, ...)."""

    @abstractmethod
    async def deliver(self, event: ProgressEvent) -> None:
        ...


class ProgressBroadcaster(ProgressSink):
    """Queue-backed ProgressSink.

    publish() only enqueues. A drain task delivers events to the transport in
    publish order; delivery errors are logged and the event dropped.

    Usage:
        broadcaster = ProgressBroadcaster(hub)
        await broadcaster.start()
        broadcaster.publish(event)
        await broadcaster.stop()
    """

    def __init__(self, transport: EventTransport | None = None) -> None:
        self._transport = transport
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._task: asyncio.Task | None = None  # type: ignore[type-arg]

    def set_transport(self, transport: EventTransport) -> None:
        self._transport = transport

    def publish(self, event: ProgressEvent) -> None:
        self._queue.put_nowait(event)

    async def start(self) -> None:
        """Start the background drain task."""
        if self._task is not None:
            logger.warning("progress_broadcaster_already_running")
            return
        self._task = asyncio.create_task(self._drain_loop())
        logger.info("progress_broadcaster_started")

    async def stop(self) -> None:
        """Deliver whatever is already queued, then stop the drain task."""
        if self._task is None:
            return
        await self._queue.join()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("progress_broadcaster_stopped")

    @property
    def pending(self) -> int:
        """Events queued but not yet delivered."""
        return self._queue.qsize()

    async def _drain_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                if self._transport is not None:
                    await self._transport.deliver(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "progress_delivery_failed",
                    job_id=event.job_id,
                    event_type=event.event_type.value,
                    exc_info=True,
                )
            finally:
                self._queue.task_done()
