"""
Exceptions raised by the offline sync client.
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync operations."""
    pass


class TransientError(SyncError):
    """Network error, timeout or server-side failure; safe to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RejectedError(SyncError):
    """The server refused the mutation (validation, ownership, missing record)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OfflineError(SyncError):
    """Sync declined because the server is not reachable."""
    pass


class AlreadyInProgressError(SyncError):
    """A sync pass is already running."""
    pass


class StorageError(SyncError):
    """The local store could not persist or read state."""
    pass


class RecordNotFoundError(SyncError, KeyError):
    """No local record with the requested id."""
    pass


class DuplicateRecordError(SyncError):
    """A record with the requested id already exists locally."""
    pass


class OperationNotFoundError(SyncError, KeyError):
    """No queued operation with the requested id."""
    pass
