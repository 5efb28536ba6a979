"""
Data models shared by the offline sync client.

Records and operations are plain dataclasses with ``to_dict``/``from_dict``
helpers so they can travel through SQLite rows and JSON bodies unchanged.
"""

import json
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Optional, Union


def now_ms() -> int:
    """Wall-clock time in milliseconds."""
    return int(time.time() * 1000)


# =============================================================================
# Enums
# =============================================================================

class OperationKind(str, Enum):
    """Kind of queued mutation."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class OperationState(str, Enum):
    """Lifecycle state of a queued operation."""
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SYNCED = "synced"
    FAILED = "failed"


class FailureKind(str, Enum):
    """Why an operation ended up Failed."""
    EXHAUSTED = "exhausted"  # Transient failures hit the attempt cap
    REJECTED = "rejected"  # Server refused the mutation outright


class ConnectivityState(str, Enum):
    """Derived reachability of the server."""
    OFFLINE = "offline"
    VERIFYING = "verifying"
    ONLINE = "online"


class SyncStatus(str, Enum):
    """Status reported to sync-state subscribers."""
    IDLE = "idle"
    SYNCING = "syncing"
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    ERROR = "error"


class Decision(str, Enum):
    """Outcome of conflict resolution for one operation."""
    ACCEPT = "accept"
    SERVER_WINS = "server_wins"
    CLIENT_WINS = "client_wins"


# =============================================================================
# Records and Operations
# =============================================================================

@dataclass
class Record:
    """One synchronizable entity."""
    id: str
    entity_type: str
    owner_id: str
    data: dict = field(default_factory=dict)
    version: int = 0
    updated_at: int = 0
    last_synced_at: Optional[int] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "owner_id": self.owner_id,
            "data": self.data,
            "version": self.version,
            "updated_at": self.updated_at,
            "last_synced_at": self.last_synced_at,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Record":
        """Create from dictionary (server responses or stored rows)."""
        return cls(
            id=d["id"],
            entity_type=d["entity_type"],
            owner_id=d["owner_id"],
            data=dict(d.get("data") or {}),
            version=int(d.get("version", 0)),
            updated_at=int(d.get("updated_at", 0)),
            last_synced_at=d.get("last_synced_at"),
        )


@dataclass
class Operation:
    """One queued mutation in the operation log."""
    id: str
    kind: OperationKind
    entity_type: str
    entity_id: str
    payload: dict
    base_version: int
    origin_timestamp: int
    state: OperationState = OperationState.PENDING
    attempt: int = 0
    last_error: Optional[str] = None
    failure: Optional[FailureKind] = None
    seq: int = 0
    next_attempt_at: Optional[int] = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @classmethod
    def new(
        cls,
        kind: OperationKind,
        entity_type: str,
        entity_id: str,
        payload: dict,
        base_version: int,
        origin_timestamp: int,
    ) -> "Operation":
        """Create a fresh Pending operation with a random id."""
        return cls(
            id=str(uuid.uuid4()),
            kind=OperationKind(kind),
            entity_type=entity_type,
            entity_id=entity_id,
            payload=dict(payload),
            base_version=base_version,
            origin_timestamp=origin_timestamp,
        )

    def rebased(self, base_version: int, kind: Optional[OperationKind] = None) -> "Operation":
        """Replacement operation retrying the same payload on a newer baseline."""
        return replace(
            self,
            id=str(uuid.uuid4()),
            kind=OperationKind(kind) if kind else self.kind,
            base_version=base_version,
            state=OperationState.PENDING,
            attempt=0,
            last_error=None,
            failure=None,
            next_attempt_at=None,
            created_at=now_ms(),
            updated_at=now_ms(),
        )

    def to_wire(self) -> dict:
        """Body sent to the reconciliation endpoint."""
        return {
            "operation_id": self.id,
            "kind": self.kind.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "base_version": self.base_version,
            "origin_timestamp": self.origin_timestamp,
        }

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            **self.to_wire(),
            "id": self.id,
            "state": self.state.value,
            "attempt": self.attempt,
            "last_error": self.last_error,
            "failure": self.failure.value if self.failure else None,
            "seq": self.seq,
            "next_attempt_at": self.next_attempt_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row) -> "Operation":
        """Create from a ``sqlite3.Row`` of the operations table."""
        return cls(
            id=row["id"],
            kind=OperationKind(row["kind"]),
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            payload=json.loads(row["payload"]),
            base_version=row["base_version"],
            origin_timestamp=row["origin_timestamp"],
            state=OperationState(row["state"]),
            attempt=row["attempt"],
            last_error=row["last_error"],
            failure=FailureKind(row["failure"]) if row["failure"] else None,
            seq=row["seq"],
            next_attempt_at=row["next_attempt_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


# =============================================================================
# Transport outcomes
# =============================================================================

@dataclass
class Applied:
    """The server accepted the mutation (record is None for deletions)."""
    record: Optional[Record] = None
    deleted: bool = False
    replayed: bool = False


@dataclass
class Conflict:
    """The server refused the baseline and returned its current record."""
    server_record: Record


SubmitOutcome = Union[Applied, Conflict]


@dataclass
class ChangeSet:
    """Server changes since a checkpoint."""
    records: list[Record]
    deleted_ids: list[str]
    checkpoint: int


@dataclass
class Resolution:
    """What to do locally after a submitted operation resolved."""
    decision: Decision
    record: Optional[Record] = None
    requeue: Optional[Operation] = None
    deleted: bool = False


# =============================================================================
# Sync state reporting
# =============================================================================

@dataclass
class FailureNotice:
    """User-visible notice for an operation that will not be retried automatically."""
    operation_id: str
    entity_id: str
    kind: FailureKind
    message: str

    @classmethod
    def from_operation(cls, op: Operation) -> "FailureNotice":
        return cls(
            operation_id=op.id,
            entity_id=op.entity_id,
            kind=op.failure or FailureKind.REJECTED,
            message=op.last_error or "",
        )


@dataclass
class SyncState:
    """Snapshot emitted to sync-state subscribers."""
    status: SyncStatus = SyncStatus.IDLE
    completed: int = 0
    total: int = 0
    error: Optional[str] = None
    notices: list[FailureNotice] = field(default_factory=list)


@dataclass
class PassResult:
    """Result of one sync pass."""
    status: SyncStatus
    total: int = 0
    completed: int = 0
    synced: int = 0
    retried: int = 0
    requeued: int = 0
    failed: list[FailureNotice] = field(default_factory=list)
    error: Optional[str] = None
    needs_rerun: bool = False
    duration_seconds: float = 0.0


@dataclass
class PullResult:
    """Result of applying a server change set."""
    applied: int
    skipped: int
    deleted: int
    checkpoint: Optional[int]


# =============================================================================
# Logical clock
# =============================================================================

class LogicalClock:
    """
    Monotonic millisecond clock for operation origin timestamps.

    Never returns a value lower than or equal to the previous one, so two
    mutations made in the same millisecond (or across a backwards wall-clock
    step) stay ordered. Still derived from the local wall clock: skew between
    devices is not corrected.
    """

    def __init__(self, wall: Callable[[], int] = now_ms, last: int = 0):
        self._wall = wall
        self._last = last
        self._lock = threading.Lock()

    def tick(self) -> int:
        with self._lock:
            self._last = max(self._wall(), self._last + 1)
            return self._last

    def observe(self, timestamp: int) -> None:
        """Advance past a timestamp seen elsewhere (e.g. restored from disk)."""
        with self._lock:
            self._last = max(self._last, timestamp)


Listener = Callable[[SyncState], Any]
