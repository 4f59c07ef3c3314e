"""
Sync Error Taxonomy

Every failure the sync engine can meet is classified into one of these
exceptions. The classification decides what happens to a queued record:

- TransientNetworkError       -> retried with backoff
- PermanentValidationError    -> frozen as failed, surfaced to the user
- SerializationError          -> the single enqueue (or dispatch) fails,
                                 the queue itself is untouched
- RetriesExhaustedError       -> frozen as failed after max attempts
- AuthenticationRequiredError -> drain stops, record left as it was
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class TransientNetworkError(SyncError):
    """
    Network error, timeout or 5xx answer. Safe to retry later.

    `status_code` is None when no HTTP response was received at all,
    which means the remote is unreachable rather than unhealthy.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)

    @property
    def is_unreachable(self) -> bool:
        return self.status_code is None


class PermanentValidationError(SyncError):
    """The remote rejected the request (4xx). Never retried automatically."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class AuthenticationRequiredError(SyncError):
    """The remote answered 401. The token must be refreshed outside the sync engine."""
    pass


class SerializationError(SyncError):
    """A request could not be encoded to, or decoded from, its payload bytes."""
    pass


class RetriesExhaustedError(SyncError):
    """A record failed transiently more often than the retry policy allows."""

    def __init__(self, record_id: str, retry_count: int):
        self.record_id = record_id
        self.retry_count = retry_count
        super().__init__(
            f"Record {record_id} failed after {retry_count} attempts"
        )


class LedgerValidationError(Exception):
    """A local write was refused because the data failed validation."""

    def __init__(self, message: str, result=None):
        self.result = result
        super().__init__(message)
