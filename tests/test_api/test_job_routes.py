"""Tests for the job and status HTTP handlers.

Handlers are called directly with a mocked Request whose app.state carries
the services, so no HTTP client is needed.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from backfill.api.app import create_app
from backfill.api.routes import jobs, status
from backfill.exceptions import (
    DuplicateJobError,
    InvalidSymbolError,
    JobNotFoundError,
    JobStateError,
    UpstreamError,
)
from backfill.exchange.weight import WeightBudgetTracker
from backfill.models import DownloadJob, Timeframe
from helpers import FakeClock

JOB = DownloadJob(
    id="job-1",
    symbol="BTCUSDT",
    timeframe=Timeframe.H1,
    start_ms=1_704_067_200_000,
    end_ms=1_704_153_600_000,
)

BODY = {
    "symbol": "BTCUSDT",
    "timeframe": "1h",
    "startDate": "2024-01-01T00:00:00Z",
    "endDate": "2024-01-02T00:00:00Z",
}


@pytest.fixture
def job_service() -> AsyncMock:
    service = AsyncMock()
    service.create_job = AsyncMock(return_value=JOB)
    service.get_job = AsyncMock(return_value=JOB)
    service.cancel_job = AsyncMock(return_value=JOB)
    return service


def _request(body: object = None, **state: object) -> MagicMock:
    request = MagicMock()
    request.json = AsyncMock(return_value=body)
    for name, value in state.items():
        setattr(request.app.state, name, value)
    return request


def _json(response) -> object:  # type: ignore[no-untyped-def]
    return json.loads(response.body)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class TestCreateJobRoute:
    @pytest.mark.asyncio
    async def test_created(self, job_service: AsyncMock) -> None:
        response = await jobs.create_job(_request(BODY, job_service=job_service))

        assert response.status_code == 201
        assert _json(response)["id"] == "job-1"
        assert _json(response)["startDate"] == "2024-01-01T00:00:00.000Z"
        job_service.create_job.assert_awaited_once_with(
            "BTCUSDT",
            "1h",
            "2024-01-01T00:00:00Z",
            "2024-01-02T00:00:00Z",
            requested_by=None,
        )

    @pytest.mark.asyncio
    async def test_missing_field(self, job_service: AsyncMock) -> None:
        body = {k: v for k, v in BODY.items() if k != "endDate"}

        response = await jobs.create_job(_request(body, job_service=job_service))

        assert response.status_code == 400
        assert "endDate" in _json(response)["error"]
        job_service.create_job.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_json_body(self, job_service: AsyncMock) -> None:
        request = _request(job_service=job_service)
        request.json.side_effect = ValueError("Expecting value")

        response = await jobs.create_job(request)

        assert response.status_code == 400

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("error", "status_code"),
        [
            (InvalidSymbolError("not listed"), 400),
            (DuplicateJobError("already running"), 409),
            (UpstreamError("exchange down"), 502),
        ],
    )
    async def test_service_errors_mapped(
        self, job_service: AsyncMock, error: Exception, status_code: int
    ) -> None:
        job_service.create_job.side_effect = error

        response = await jobs.create_job(_request(BODY, job_service=job_service))

        assert response.status_code == status_code
        assert _json(response) == {"error": str(error)}


class TestJobQueries:
    @pytest.mark.asyncio
    async def test_get_job_not_found(self, job_service: AsyncMock) -> None:
        job_service.get_job.side_effect = JobNotFoundError("Job nope not found")

        response = await jobs.get_job(_request(job_service=job_service), "nope")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_cancel_accepted(self, job_service: AsyncMock) -> None:
        response = await jobs.cancel_job(_request(job_service=job_service), "job-1")

        assert response.status_code == 202
        job_service.cancel_job.assert_awaited_once_with("job-1")

    @pytest.mark.asyncio
    async def test_cancel_finished_job_conflicts(self, job_service: AsyncMock) -> None:
        job_service.cancel_job.side_effect = JobStateError("already completed")

        response = await jobs.cancel_job(_request(job_service=job_service), "job-1")

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_list_and_stats(self, job_service: AsyncMock) -> None:
        job_service.list_jobs = AsyncMock(return_value=[JOB])
        job_service.get_statistics = AsyncMock(return_value={"pending": 1, "total": 1})
        request = _request(job_service=job_service)

        listed = await jobs.list_jobs(request, status="pending", limit=10)
        stats = await jobs.get_job_statistics(request)

        assert [j["id"] for j in _json(listed)] == ["job-1"]
        assert _json(stats) == {"pending": 1, "total": 1}
        job_service.list_jobs.assert_awaited_once_with(
            status="pending", symbol=None, limit=10, offset=0
        )


# ---------------------------------------------------------------------------
# Status
# ---------------------------------------------------------------------------


class TestStatusRoutes:
    @pytest.mark.asyncio
    async def test_weight_usage(self) -> None:
        clock = FakeClock()
        tracker = WeightBudgetTracker(limit=6000, clock=clock, sleep=clock.sleep)
        await tracker.reserve(10)
        clock.now += 15

        response = await status.get_weight_usage(_request(weight_tracker=tracker))

        assert _json(response) == {
            "used": 10,
            "limit": 6000,
            "remaining": 5990,
            "resetsInSeconds": 45.0,
        }

    @pytest.mark.asyncio
    async def test_unknown_symbol_status(self) -> None:
        service = AsyncMock()
        service.get_status = AsyncMock(return_value=None)

        response = await status.get_symbol_status(_request(symbol_status=service), "NOPE")

        assert response.status_code == 404


def test_app_registers_routes() -> None:
    app = create_app()
    paths = {route.path for route in app.routes}

    assert {"/api/jobs", "/api/jobs/{job_id}/cancel", "/api/weight", "/ws/jobs"} <= paths
    assert app.state.hub is not None
