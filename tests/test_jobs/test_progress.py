"""Tests for ProgressEvent payloads and the queue-backed broadcaster."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from backfill.jobs.progress import (
    EventTransport,
    ProgressBroadcaster,
    ProgressEvent,
    ProgressEventType,
)
from backfill.models import DownloadJob, JobStatus, Timeframe


def _event(job_id: str = "job-1", status: JobStatus = JobStatus.RUNNING, **kwargs) -> ProgressEvent:
    return ProgressEvent(
        job_id=job_id,
        status=status,
        progress=kwargs.pop("progress", 12.5),
        processed_candles=kwargs.pop("processed_candles", 100),
        total_candles=kwargs.pop("total_candles", 800),
        message=kwargs.pop("message", "Downloading"),
        symbol="BTCUSDT",
        timeframe="1h",
        timestamp_ms=0,
        **kwargs,
    )


class RecordingTransport(EventTransport):
    def __init__(self) -> None:
        self.delivered: list[ProgressEvent] = []

    async def deliver(self, event: ProgressEvent) -> None:
        self.delivered.append(event)


# ---------------------------------------------------------------------------
# Event payloads
# ---------------------------------------------------------------------------


class TestProgressEvent:
    def test_payload_fields(self) -> None:
        payload = _event().to_payload()

        assert payload == {
            "event": "job-update",
            "jobId": "job-1",
            "status": "running",
            "progress": 12.5,
            "processedCandles": 100,
            "totalCandles": 800,
            "message": "Downloading",
            "symbol": "BTCUSDT",
            "timeframe": "1h",
            "timestamp": "1970-01-01T00:00:00.000Z",
        }

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (JobStatus.PENDING, ProgressEventType.UPDATE),
            (JobStatus.RUNNING, ProgressEventType.UPDATE),
            (JobStatus.COMPLETED, ProgressEventType.COMPLETED),
            (JobStatus.FAILED, ProgressEventType.FAILED),
            (JobStatus.CANCELLED, ProgressEventType.CANCELLED),
        ],
    )
    def test_event_type_follows_status(
        self, status: JobStatus, expected: ProgressEventType
    ) -> None:
        assert _event(status=status).event_type == expected

    def test_error_included_only_when_set(self) -> None:
        failed = _event(status=JobStatus.FAILED, error="Invalid symbol").to_payload()

        assert failed["event"] == "job-failed"
        assert failed["error"] == "Invalid symbol"
        assert "error" not in _event().to_payload()

    def test_for_job_copies_record(self) -> None:
        job = DownloadJob(
            id="abc",
            symbol="ETHUSDT",
            timeframe=Timeframe.M15,
            start_ms=0,
            end_ms=1,
            status=JobStatus.RUNNING,
            progress=40.0,
            processed_candles=4,
            total_candles=10,
        )

        event = ProgressEvent.for_job(job, "Saving 4 candles")

        assert event.job_id == "abc"
        assert event.timeframe == "15m"
        assert event.progress == 40.0
        assert event.message == "Saving 4 candles"


# ---------------------------------------------------------------------------
# Broadcaster
# ---------------------------------------------------------------------------


class TestProgressBroadcaster:
    @pytest.mark.asyncio
    async def test_delivers_in_publish_order(self) -> None:
        transport = RecordingTransport()
        broadcaster = ProgressBroadcaster(transport)
        await broadcaster.start()

        for i in range(5):
            broadcaster.publish(_event(progress=float(i)))
        await broadcaster.stop()

        assert [e.progress for e in transport.delivered] == [0.0, 1.0, 2.0, 3.0, 4.0]
        assert broadcaster.pending == 0

    @pytest.mark.asyncio
    async def test_publish_never_blocks_before_start(self) -> None:
        broadcaster = ProgressBroadcaster()

        broadcaster.publish(_event())
        broadcaster.publish(_event())

        assert broadcaster.pending == 2

    @pytest.mark.asyncio
    async def test_failing_transport_does_not_stop_delivery(self) -> None:
        transport = AsyncMock(spec=EventTransport)
        transport.deliver.side_effect = [RuntimeError("socket closed"), None]
        broadcaster = ProgressBroadcaster(transport)
        await broadcaster.start()

        broadcaster.publish(_event(message="first"))
        broadcaster.publish(_event(message="second"))
        await asyncio.wait_for(broadcaster.stop(), timeout=1.0)

        assert transport.deliver.await_count == 2

    @pytest.mark.asyncio
    async def test_transport_can_be_attached_later(self) -> None:
        broadcaster = ProgressBroadcaster()
        transport = RecordingTransport()
        broadcaster.set_transport(transport)
        await broadcaster.start()

        broadcaster.publish(_event())
        await broadcaster.stop()

        assert len(transport.delivered) == 1
