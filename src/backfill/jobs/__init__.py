"""Download jobs: storage, orchestration, progress, queueing and scheduling."""

from backfill.jobs.cancellation import CancellationRegistry
from backfill.jobs.gap_fill import GapFillScheduler
from backfill.jobs.orchestrator import DownloadOrchestrator
from backfill.jobs.progress import (
    EventTransport,
    ProgressBroadcaster,
    ProgressEvent,
    ProgressEventType,
    ProgressSink,
)
from backfill.jobs.service import JobService
from backfill.jobs.store import JobStore
from backfill.jobs.worker import DownloadWorkerPool, InProcessJobQueue, JobQueue

__all__ = [
    "CancellationRegistry",
    "DownloadOrchestrator",
    "DownloadWorkerPool",
    "EventTransport",
    "GapFillScheduler",
    "InProcessJobQueue",
    "JobQueue",
    "JobService",
    "JobStore",
    "ProgressBroadcaster",
    "ProgressEvent",
    "ProgressEventType",
    "ProgressSink",
]
