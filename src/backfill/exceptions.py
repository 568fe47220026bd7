"""Custom exceptions for the kline backfill engine.

The upstream branch mirrors the retry policy: RateLimitError and
TransientNetworkError are retried inside the fetcher, every other
UpstreamError is fatal for the job.
"""


class BackfillError(Exception):
    """Base exception for all backfill errors."""


class UpstreamError(BackfillError):
    """Raised for a non-retryable upstream failure (bad symbol, bad request)."""


class RateLimitError(UpstreamError):
    """Raised when the upstream answers HTTP 429/418 (weight exhausted)."""


class TransientNetworkError(UpstreamError):
    """Raised on connection resets and timeouts."""


class PersistenceError(BackfillError):
    """Raised when a candle chunk could not be written after all retries."""


class ValidationError(BackfillError):
    """Raised when a job request is malformed (timeframe, dates)."""


class InvalidSymbolError(ValidationError):
    """Raised when a symbol is not listed on the upstream exchange."""


class DuplicateJobError(BackfillError):
    """Raised when a pending or running job already exists for a symbol/timeframe."""


class JobNotFoundError(BackfillError):
    """Raised when a job id does not exist."""


class JobStateError(BackfillError):
    """Raised when a job is asked to leave a terminal state."""


class JobCancelledError(BackfillError):
    """Raised inside a running job when its cancellation flag is observed."""
