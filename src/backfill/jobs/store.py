"""Persistence for download job records.

Every status change is a conditional UPDATE on the current status, so two
writers racing on the same job (worker finishing vs user cancelling) cannot
move a job out of a terminal state. Each transition method returns whether
it applied.
"""

import sqlite3

from backfill.data.database import CandleDatabase
from backfill.exceptions import DuplicateJobError
from backfill.logging import get_logger
from backfill.models import ACTIVE_STATUSES, DownloadJob, JobStatus, Timeframe, now_ms

logger = get_logger(__name__)

_JOB_COLUMNS = (
    "id, symbol, timeframe, start_ms, end_ms, status, progress, processed_candles, "
    "total_candles, new_candles, updated_candles, error, requested_by, created_at_ms, "
    "started_at_ms, completed_at_ms, last_progress_at_ms"
)


def _row_to_job(row: tuple) -> DownloadJob:
    return DownloadJob(
        id=row[0],
        symbol=row[1],
        timeframe=Timeframe(row[2]),
        start_ms=row[3],
        end_ms=row[4],
        status=JobStatus(row[5]),
        progress=row[6],
        processed_candles=row[7],
        total_candles=row[8],
        new_candles=row[9],
        updated_candles=row[10],
        error=row[11],
        requested_by=row[12],
        created_at_ms=row[13],
        started_at_ms=row[14],
        completed_at_ms=row[15],
        last_progress_at_ms=row[16],
    )


class JobStore:
    """Async SQLite store for DownloadJob rows."""

    def __init__(self, database: CandleDatabase) -> None:
        self._database = database

    # ──────────────────────────────────────────────
    # Write methods
    # ──────────────────────────────────────────────

    async def insert(self, job: DownloadJob) -> None:
        """Insert a new job.

        Raises DuplicateJobError if another pending/running job exists for
        the same symbol and timeframe.
        """
        try:
            async with self._database.transaction() as db:
                await db.execute(
                    f"INSERT INTO download_jobs ({_JOB_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        job.id,
                        job.symbol,
                        job.timeframe.value,
                        job.start_ms,
                        job.end_ms,
                        job.status.value,
                        job.progress,
                        job.processed_candles,
                        job.total_candles,
                        job.new_candles,
                        job.updated_candles,
                        job.error,
                        job.requested_by,
                        job.created_at_ms,
                        job.started_at_ms,
                        job.completed_at_ms,
                        job.last_progress_at_ms,
                    ),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateJobError(
                f"An active job already exists for {job.symbol} {job.timeframe.value}"
            ) from e

    async def mark_started(self, job_id: str) -> bool:
        """PENDING -> RUNNING. A RUNNING job is reclaimed (redelivery after a crash)."""
        now = now_ms()
        return await self._transition(
            "UPDATE download_jobs SET status = ?, started_at_ms = ?, last_progress_at_ms = ?, "
            "error = NULL WHERE id = ? AND status IN (?, ?)",
            (JobStatus.RUNNING.value, now, now, job_id, *[s.value for s in ACTIVE_STATUSES]),
        )

    async def update_progress(
        self,
        job_id: str,
        progress: float,
        processed_candles: int,
        total_candles: int,
        new_candles: int,
        updated_candles: int,
    ) -> bool:
        """Write progress counters for a RUNNING job."""
        return await self._transition(
            "UPDATE download_jobs SET progress = ?, processed_candles = ?, total_candles = ?, "
            "new_candles = ?, updated_candles = ?, last_progress_at_ms = ? "
            "WHERE id = ? AND status = ?",
            (
                progress,
                processed_candles,
                total_candles,
                new_candles,
                updated_candles,
                now_ms(),
                job_id,
                JobStatus.RUNNING.value,
            ),
        )

    async def mark_completed(
        self, job_id: str, processed_candles: int, new_candles: int, updated_candles: int
    ) -> bool:
        """RUNNING -> COMPLETED with progress 100."""
        now = now_ms()
        return await self._transition(
            "UPDATE download_jobs SET status = ?, progress = 100, processed_candles = ?, "
            "total_candles = ?, new_candles = ?, updated_candles = ?, completed_at_ms = ?, "
            "last_progress_at_ms = ? WHERE id = ? AND status = ?",
            (
                JobStatus.COMPLETED.value,
                processed_candles,
                processed_candles,
                new_candles,
                updated_candles,
                now,
                now,
                job_id,
                JobStatus.RUNNING.value,
            ),
        )

    async def mark_failed(
        self,
        job_id: str,
        error: str,
        processed_candles: int,
        new_candles: int,
        updated_candles: int,
    ) -> bool:
        """PENDING/RUNNING -> FAILED, keeping progress and counts so far."""
        return await self._transition(
            "UPDATE download_jobs SET status = ?, error = ?, processed_candles = ?, "
            "new_candles = ?, updated_candles = ?, completed_at_ms = ? "
            "WHERE id = ? AND status IN (?, ?)",
            (
                JobStatus.FAILED.value,
                error,
                processed_candles,
                new_candles,
                updated_candles,
                now_ms(),
                job_id,
                *[s.value for s in ACTIVE_STATUSES],
            ),
        )

    async def mark_cancelled(
        self,
        job_id: str,
        processed_candles: int,
        new_candles: int,
        updated_candles: int,
    ) -> bool:
        """RUNNING -> CANCELLED with the partial counts."""
        return await self._transition(
            "UPDATE download_jobs SET status = ?, processed_candles = ?, new_candles = ?, "
            "updated_candles = ?, completed_at_ms = ? WHERE id = ? AND status = ?",
            (
                JobStatus.CANCELLED.value,
                processed_candles,
                new_candles,
                updated_candles,
                now_ms(),
                job_id,
                JobStatus.RUNNING.value,
            ),
        )

    async def cancel_pending(self, job_id: str) -> bool:
        """PENDING -> CANCELLED for a job no worker has picked up yet."""
        return await self._transition(
            "UPDATE download_jobs SET status = ?, completed_at_ms = ? WHERE id = ? AND status = ?",
            (JobStatus.CANCELLED.value, now_ms(), job_id, JobStatus.PENDING.value),
        )

    # ──────────────────────────────────────────────
    # Read methods
    # ──────────────────────────────────────────────

    async def get(self, job_id: str) -> DownloadJob | None:
        cursor = await self._database.db.execute(
            f"SELECT {_JOB_COLUMNS} FROM download_jobs WHERE id = ?", (job_id,)
        )
        row = await cursor.fetchone()
        return _row_to_job(row) if row else None

    async def list_jobs(
        self,
        status: JobStatus | None = None,
        symbol: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DownloadJob]:
        """Jobs ordered by creation time, newest first."""
        conditions: list[str] = []
        params: list = []
        if status is not None:
            conditions.append("status = ?")
            params.append(status.value)
        if symbol is not None:
            conditions.append("symbol = ?")
            params.append(symbol)

        query = f"SELECT {_JOB_COLUMNS} FROM download_jobs"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY created_at_ms DESC, id LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        cursor = await self._database.db.execute(query, params)
        return [_row_to_job(row) for row in await cursor.fetchall()]

    async def list_active(self) -> list[DownloadJob]:
        """Pending and running jobs, oldest first."""
        cursor = await self._database.db.execute(
            f"SELECT {_JOB_COLUMNS} FROM download_jobs WHERE status IN (?, ?) "
            "ORDER BY created_at_ms ASC, id",
            tuple(s.value for s in ACTIVE_STATUSES),
        )
        return [_row_to_job(row) for row in await cursor.fetchall()]

    async def find_active(self, symbol: str, timeframe: Timeframe) -> DownloadJob | None:
        """The pending/running job for a symbol and timeframe, if any."""
        cursor = await self._database.db.execute(
            f"SELECT {_JOB_COLUMNS} FROM download_jobs "
            "WHERE symbol = ? AND timeframe = ? AND status IN (?, ?) LIMIT 1",
            (symbol, timeframe.value, *[s.value for s in ACTIVE_STATUSES]),
        )
        row = await cursor.fetchone()
        return _row_to_job(row) if row else None

    async def count_by_status(self) -> dict[JobStatus, int]:
        """Number of jobs per status, zero-filled."""
        cursor = await self._database.db.execute(
            "SELECT status, COUNT(*) FROM download_jobs GROUP BY status"
        )
        counts = {status: 0 for status in JobStatus}
        for status, count in await cursor.fetchall():
            counts[JobStatus(status)] = count
        return counts

    async def _transition(self, sql: str, params: tuple) -> bool:
        async with self._database.transaction() as db:
            cursor = await db.execute(sql, params)
            changed = cursor.rowcount > 0
        return changed
