"""JSON endpoints for creating, cancelling and inspecting download jobs."""

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from backfill.exceptions import (
    BackfillError,
    DuplicateJobError,
    JobNotFoundError,
    JobStateError,
    UpstreamError,
    ValidationError,
)
from backfill.jobs.service import JobService

log = structlog.get_logger(__name__)

router = APIRouter()

_REQUIRED_FIELDS = ("symbol", "timeframe", "startDate", "endDate")


def _error_response(error: BackfillError) -> JSONResponse:
    """Map a domain error to an HTTP status."""
    if isinstance(error, ValidationError):
        status_code = 400
    elif isinstance(error, JobNotFoundError):
        status_code = 404
    elif isinstance(error, (DuplicateJobError, JobStateError)):
        status_code = 409
    elif isinstance(error, UpstreamError):
        status_code = 502
    else:
        status_code = 500
    return JSONResponse(content={"error": str(error)}, status_code=status_code)


@router.post("/jobs")
async def create_job(request: Request) -> JSONResponse:
    """Create a download job from {symbol, timeframe, startDate, endDate}."""
    service: JobService = request.app.state.job_service

    try:
        body = await request.json()
    except Exception:
        return JSONResponse(content={"error": "Invalid JSON body"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse(content={"error": "Expected a JSON object"}, status_code=400)

    for field in _REQUIRED_FIELDS:
        if field not in body:
            return JSONResponse(
                content={"error": f"Missing required field: {field}"}, status_code=400
            )

    try:
        job = await service.create_job(
            str(body["symbol"]),
            str(body["timeframe"]),
            body["startDate"],
            body["endDate"],
            requested_by=body.get("requestedBy"),
        )
    except BackfillError as e:
        log.info("job_create_rejected", error=str(e), error_type=type(e).__name__)
        return _error_response(e)

    return JSONResponse(content=job.to_dict(), status_code=201)


@router.get("/jobs")
async def list_jobs(
    request: Request,
    status: str | None = None,
    symbol: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> JSONResponse:
    """Jobs, newest first, optionally filtered by status and symbol."""
    service: JobService = request.app.state.job_service
    try:
        jobs = await service.list_jobs(status=status, symbol=symbol, limit=limit, offset=offset)
    except BackfillError as e:
        return _error_response(e)
    return JSONResponse(content=[job.to_dict() for job in jobs])


@router.get("/jobs/active")
async def get_active_jobs(request: Request) -> JSONResponse:
    """Pending and running jobs."""
    service: JobService = request.app.state.job_service
    jobs = await service.get_active_jobs()
    return JSONResponse(content=[job.to_dict() for job in jobs])


@router.get("/jobs/stats")
async def get_job_statistics(request: Request) -> JSONResponse:
    service: JobService = request.app.state.job_service
    return JSONResponse(content=await service.get_statistics())


@router.get("/jobs/{job_id}")
async def get_job(request: Request, job_id: str) -> JSONResponse:
    service: JobService = request.app.state.job_service
    try:
        job = await service.get_job(job_id)
    except BackfillError as e:
        return _error_response(e)
    return JSONResponse(content=job.to_dict())


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(request: Request, job_id: str) -> JSONResponse:
    """Cancel a pending job now, or ask a running job to stop."""
    service: JobService = request.app.state.job_service
    try:
        job = await service.cancel_job(job_id)
    except BackfillError as e:
        return _error_response(e)
    return JSONResponse(content=job.to_dict(), status_code=202)
