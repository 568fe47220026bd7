"""In-process cancellation flags for running jobs."""


class CancellationRegistry:
    """Job ids whose cancellation was requested while they were running.

    Shared by the job service (sets flags) and the orchestrator (polls
    them between pages and ranges).
    """

    def __init__(self) -> None:
        self._requested: set[str] = set()

    def request(self, job_id: str) -> None:
        self._requested.add(job_id)

    def is_requested(self, job_id: str) -> bool:
        return job_id in self._requested

    def clear(self, job_id: str) -> None:
        self._requested.discard(job_id)
