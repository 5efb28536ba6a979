"""
Offline Sync - client library

Local-first record store with a durable operation log, drained to the
reconciliation API whenever the server is reachable.
"""

from .config import SyncConfig
from .context import SyncContext, sync_session
from .engine import SyncEngine, plan_batches
from .errors import (
    AlreadyInProgressError,
    DuplicateRecordError,
    OfflineError,
    OperationNotFoundError,
    RecordNotFoundError,
    RejectedError,
    StorageError,
    SyncError,
    TransientError,
)
from .models import (
    Applied,
    ChangeSet,
    Conflict,
    ConnectivityState,
    Decision,
    FailureKind,
    FailureNotice,
    LogicalClock,
    Operation,
    OperationKind,
    OperationState,
    PassResult,
    PullResult,
    Record,
    Resolution,
    SyncState,
    SyncStatus,
)
from .resolver import resolve
from .store import LocalStore
from .transport import HttpTransport, Transport

__version__ = "0.1.0"
__all__ = [
    # Main classes
    "SyncContext",
    "SyncEngine",
    "LocalStore",
    "Transport",
    "HttpTransport",

    # Configuration
    "SyncConfig",

    # Data models
    "Record",
    "Operation",
    "OperationKind",
    "OperationState",
    "FailureKind",
    "FailureNotice",
    "ConnectivityState",
    "SyncStatus",
    "SyncState",
    "PassResult",
    "PullResult",
    "Applied",
    "Conflict",
    "ChangeSet",
    "Decision",
    "Resolution",
    "LogicalClock",

    # Exceptions
    "SyncError",
    "TransientError",
    "RejectedError",
    "OfflineError",
    "AlreadyInProgressError",
    "StorageError",
    "RecordNotFoundError",
    "DuplicateRecordError",
    "OperationNotFoundError",

    # Functions
    "resolve",
    "plan_batches",
    "sync_session",
]
