"""
SQLite-backed local store: current record state plus the operation log.

Every public write commits before returning. A record change and the
operation that describes it are committed in the same transaction, so a
crash can never leave one without the other.
"""

import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Optional

from .errors import (
    DuplicateRecordError,
    OperationNotFoundError,
    RecordNotFoundError,
    StorageError,
)
from .models import (
    Operation,
    OperationKind,
    OperationState,
    PullResult,
    Record,
    now_ms,
)

logger = logging.getLogger(__name__)

_OPERATION_PATCH_FIELDS = frozenset({
    "state",
    "attempt",
    "last_error",
    "failure",
    "base_version",
    "next_attempt_at",
})


class LocalStore:
    """Durable records, operation log and pull checkpoints."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS records (
        id TEXT PRIMARY KEY,
        entity_type TEXT NOT NULL,
        owner_id TEXT NOT NULL,
        data TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        updated_at INTEGER NOT NULL,
        last_synced_at INTEGER
    );

    CREATE TABLE IF NOT EXISTS operations (
        id TEXT PRIMARY KEY,
        seq INTEGER NOT NULL,
        kind TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        entity_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        base_version INTEGER NOT NULL,
        origin_timestamp INTEGER NOT NULL,
        state TEXT NOT NULL,
        attempt INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        failure TEXT,
        next_attempt_at INTEGER,
        created_at INTEGER NOT NULL,
        updated_at INTEGER NOT NULL
    );

    CREATE TABLE IF NOT EXISTS checkpoints (
        owner_id TEXT PRIMARY KEY,
        checkpoint INTEGER NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_records_type ON records(entity_type);
    CREATE INDEX IF NOT EXISTS idx_records_owner ON records(owner_id);
    CREATE INDEX IF NOT EXISTS idx_operations_state ON operations(state);
    CREATE INDEX IF NOT EXISTS idx_operations_entity ON operations(entity_id, seq);
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._write_lock = threading.RLock()
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(self.SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper cleanup and retry for SQLITE_BUSY."""
        conn = None
        for attempt in range(5):
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=30.0)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA synchronous=FULL")
                break
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) and attempt < 4:
                    time.sleep(0.1 * (2 ** attempt))
                else:
                    raise StorageError(f"Cannot open local store: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Local store failure: {e}") from e
        finally:
            if conn:
                conn.close()

    # === Row helpers ===

    @staticmethod
    def _record_from_row(row: sqlite3.Row) -> Record:
        return Record(
            id=row["id"],
            entity_type=row["entity_type"],
            owner_id=row["owner_id"],
            data=json.loads(row["data"]),
            version=row["version"],
            updated_at=row["updated_at"],
            last_synced_at=row["last_synced_at"],
        )

    @staticmethod
    def _put_record(conn: sqlite3.Connection, record: Record) -> None:
        conn.execute(
            """
            INSERT OR REPLACE INTO records
            (id, entity_type, owner_id, data, version, updated_at, last_synced_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.entity_type,
                record.owner_id,
                json.dumps(record.data),
                record.version,
                record.updated_at,
                record.last_synced_at,
            ),
        )

    @staticmethod
    def _next_seq(conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 AS seq FROM operations").fetchone()
        return row["seq"]

    def next_seq(self) -> int:
        """Sequence number the next appended operation will get."""
        with self._get_connection() as conn:
            return self._next_seq(conn)

    def _insert_operation(self, conn: sqlite3.Connection, op: Operation) -> Operation:
        if not op.seq:
            op.seq = self._next_seq(conn)
        conn.execute(
            """
            INSERT INTO operations
            (id, seq, kind, entity_type, entity_id, payload, base_version,
             origin_timestamp, state, attempt, last_error, failure,
             next_attempt_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                op.id,
                op.seq,
                op.kind.value,
                op.entity_type,
                op.entity_id,
                json.dumps(op.payload),
                op.base_version,
                op.origin_timestamp,
                op.state.value,
                op.attempt,
                op.last_error,
                op.failure.value if op.failure else None,
                op.next_attempt_at,
                op.created_at,
                op.updated_at,
            ),
        )
        return op

    @staticmethod
    def _has_unsynced(conn: sqlite3.Connection, entity_id: str, after_seq: Optional[int] = None) -> bool:
        query = "SELECT 1 FROM operations WHERE entity_id = ? AND state != ?"
        params: list = [entity_id, OperationState.SYNCED.value]
        if after_seq is not None:
            query += " AND seq > ?"
            params.append(after_seq)
        return conn.execute(query + " LIMIT 1", params).fetchone() is not None

    # === Record Operations ===

    def write(self, record: Record) -> None:
        """Insert or replace a record."""
        with self._write_lock, self._get_connection() as conn:
            self._put_record(conn, record)
            conn.commit()

    def read(self, entity_id: str) -> Optional[Record]:
        """Get a record by id, or None."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM records WHERE id = ?", (entity_id,)).fetchone()
        return self._record_from_row(row) if row else None

    def delete(self, entity_id: str) -> bool:
        """Remove a record. Missing records are not an error."""
        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM records WHERE id = ?", (entity_id,))
            conn.commit()
            return cursor.rowcount > 0

    def list_records(
        self,
        entity_type: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> list[Record]:
        """List records, optionally filtered by type and owner."""
        query = "SELECT * FROM records WHERE 1 = 1"
        params: list = []
        if entity_type:
            query += " AND entity_type = ?"
            params.append(entity_type)
        if owner_id:
            query += " AND owner_id = ?"
            params.append(owner_id)
        with self._get_connection() as conn:
            rows = conn.execute(query + " ORDER BY updated_at DESC", params).fetchall()
        return [self._record_from_row(row) for row in rows]

    def apply_server_record(
        self,
        record: Record,
        preserve_local_fields: bool = False,
        synced_at: Optional[int] = None,
    ) -> Optional[Record]:
        """
        Store a server-confirmed record (idempotent put).

        With ``preserve_local_fields`` the local data and timestamp are kept and
        only the authoritative version and sync marker are taken from the
        server; used while later local mutations of the entity are still queued.
        A record already deleted locally stays deleted and None is returned.
        """
        synced_at = synced_at if synced_at is not None else now_ms()
        with self._write_lock, self._get_connection() as conn:
            stored = record
            if preserve_local_fields:
                row = conn.execute("SELECT * FROM records WHERE id = ?", (record.id,)).fetchone()
                if row is None:
                    return None
                local = self._record_from_row(row)
                local.version = record.version
                stored = local
            stored.last_synced_at = synced_at
            self._put_record(conn, stored)
            conn.commit()
        return stored

    # === Mutation + Log ===

    def write_with_operation(self, record: Record, op: Operation, create: bool = False) -> Operation:
        """Write a record and append its operation in one transaction."""
        with self._write_lock, self._get_connection() as conn:
            if create:
                exists = conn.execute("SELECT 1 FROM records WHERE id = ?", (record.id,)).fetchone()
                if exists:
                    raise DuplicateRecordError(f"Record already exists: {record.id}")
            self._put_record(conn, record)
            self._insert_operation(conn, op)
            conn.commit()
        logger.debug(f"Queued {op.kind.value} for {op.entity_type}:{op.entity_id} (op {op.id})")
        return op

    def delete_with_operation(self, entity_id: str, op: Operation) -> Operation:
        """Delete a record and append its operation in one transaction."""
        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM records WHERE id = ?", (entity_id,))
            if cursor.rowcount == 0:
                raise RecordNotFoundError(entity_id)
            self._insert_operation(conn, op)
            conn.commit()
        logger.debug(f"Queued delete for {op.entity_type}:{entity_id} (op {op.id})")
        return op

    # === Operation Log ===

    def append_operation(self, op: Operation) -> Operation:
        """Append an operation to the log, assigning its sequence if unset."""
        with self._write_lock, self._get_connection() as conn:
            self._insert_operation(conn, op)
            conn.commit()
        return op

    def get_operation(self, op_id: str) -> Operation:
        """Get an operation by id."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM operations WHERE id = ?", (op_id,)).fetchone()
        if not row:
            raise OperationNotFoundError(op_id)
        return Operation.from_row(row)

    def list_operations(
        self,
        state: Optional[OperationState] = None,
        entity_id: Optional[str] = None,
        exclude_state: Optional[OperationState] = None,
    ) -> list[Operation]:
        """List operations in enqueue order."""
        query = "SELECT * FROM operations WHERE 1 = 1"
        params: list = []
        if state:
            query += " AND state = ?"
            params.append(OperationState(state).value)
        if exclude_state:
            query += " AND state != ?"
            params.append(OperationState(exclude_state).value)
        if entity_id:
            query += " AND entity_id = ?"
            params.append(entity_id)
        with self._get_connection() as conn:
            rows = conn.execute(query + " ORDER BY seq ASC, created_at ASC, rowid ASC", params).fetchall()
        return [Operation.from_row(row) for row in rows]

    def update_operation(self, op_id: str, **patch) -> Operation:
        """Patch bookkeeping fields of an operation."""
        unknown = set(patch) - _OPERATION_PATCH_FIELDS
        if unknown:
            raise ValueError(f"Cannot patch operation fields: {sorted(unknown)}")

        values = {
            key: (value.value if hasattr(value, "value") else value)
            for key, value in patch.items()
        }
        values["updated_at"] = now_ms()
        assignments = ", ".join(f"{key} = ?" for key in values)

        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE operations SET {assignments} WHERE id = ?",
                (*values.values(), op_id),
            )
            if cursor.rowcount == 0:
                raise OperationNotFoundError(op_id)
            conn.commit()
            row = conn.execute("SELECT * FROM operations WHERE id = ?", (op_id,)).fetchone()
        return Operation.from_row(row)

    def replace_operation(self, op_id: str, replacement: Operation) -> Operation:
        """Mark an operation Synced and queue its replacement at the same position."""
        with self._write_lock, self._get_connection() as conn:
            row = conn.execute("SELECT seq FROM operations WHERE id = ?", (op_id,)).fetchone()
            if not row:
                raise OperationNotFoundError(op_id)
            conn.execute(
                "UPDATE operations SET state = ?, updated_at = ? WHERE id = ?",
                (OperationState.SYNCED.value, now_ms(), op_id),
            )
            replacement.seq = row["seq"]
            self._insert_operation(conn, replacement)
            conn.commit()
        return replacement

    def remove_operation(self, op_id: str) -> None:
        """Remove an operation from the log."""
        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM operations WHERE id = ?", (op_id,))
            if cursor.rowcount == 0:
                raise OperationNotFoundError(op_id)
            conn.commit()

    def mark_in_flight(self, op_ids: Iterable[str]) -> None:
        """Move a batch of Pending operations to InFlight in one transaction."""
        ids = list(op_ids)
        if not ids:
            return
        with self._write_lock, self._get_connection() as conn:
            conn.executemany(
                "UPDATE operations SET state = ?, updated_at = ? WHERE id = ? AND state = ?",
                [
                    (OperationState.IN_FLIGHT.value, now_ms(), op_id, OperationState.PENDING.value)
                    for op_id in ids
                ],
            )
            conn.commit()

    def release_in_flight(self, op_ids: Optional[Iterable[str]] = None) -> int:
        """Return InFlight operations to Pending (all of them when no ids given)."""
        with self._write_lock, self._get_connection() as conn:
            if op_ids is None:
                cursor = conn.execute(
                    "UPDATE operations SET state = ?, updated_at = ? WHERE state = ?",
                    (OperationState.PENDING.value, now_ms(), OperationState.IN_FLIGHT.value),
                )
                released = cursor.rowcount
            else:
                released = 0
                for op_id in op_ids:
                    cursor = conn.execute(
                        "UPDATE operations SET state = ?, updated_at = ? WHERE id = ? AND state = ?",
                        (OperationState.PENDING.value, now_ms(), op_id, OperationState.IN_FLIGHT.value),
                    )
                    released += cursor.rowcount
            conn.commit()
        return released

    def rebase_operations(self, entity_id: str, after_seq: int, base_version: int) -> int:
        """Point every unsynced update/delete queued after ``after_seq`` at a new server version."""
        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE operations SET base_version = ?, updated_at = ?
                WHERE entity_id = ? AND seq > ? AND state != ? AND kind != ?
                """,
                (
                    base_version,
                    now_ms(),
                    entity_id,
                    after_seq,
                    OperationState.SYNCED.value,
                    OperationKind.CREATE.value,
                ),
            )
            conn.commit()
            return cursor.rowcount

    def has_unsynced_operations(self, entity_id: str, after_seq: Optional[int] = None) -> bool:
        """Whether the entity still has operations that are not Synced."""
        with self._get_connection() as conn:
            return self._has_unsynced(conn, entity_id, after_seq)

    def recover(self) -> dict[str, int]:
        """
        Repair state left behind by a crash.

        InFlight operations go back to Pending. A never-synced local record
        without any operation in the log gets its create re-enqueued.
        """
        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE operations SET state = ?, updated_at = ? WHERE state = ?",
                (OperationState.PENDING.value, now_ms(), OperationState.IN_FLIGHT.value),
            )
            released = cursor.rowcount

            orphans = conn.execute(
                """
                SELECT * FROM records r
                WHERE r.version = 0 AND r.last_synced_at IS NULL
                AND NOT EXISTS (SELECT 1 FROM operations o WHERE o.entity_id = r.id)
                """
            ).fetchall()
            for row in orphans:
                record = self._record_from_row(row)
                self._insert_operation(conn, Operation.new(
                    OperationKind.CREATE,
                    record.entity_type,
                    record.id,
                    record.data,
                    base_version=0,
                    origin_timestamp=record.updated_at,
                ))
            conn.commit()

        if released or orphans:
            logger.info(f"Recovered local store: {released} in-flight released, {len(orphans)} creates re-enqueued")
        return {"released": released, "reenqueued": len(orphans)}

    # === Pull ===

    def apply_pull(
        self,
        owner_id: str,
        records: list[Record],
        deleted_ids: list[str],
        checkpoint: int,
        synced_at: Optional[int] = None,
        since: Optional[int] = None,
    ) -> PullResult:
        """
        Overlay a server change set and advance the checkpoint atomically.

        Entities with unsynced local operations are skipped; their queued
        mutations reconcile through the push path instead. The stored
        checkpoint is held back so skipped changes come down again on a later
        pull: to just before the oldest skipped record, or to ``since`` (the
        checkpoint this change set was fetched with) when a delete is skipped.
        """
        synced_at = synced_at if synced_at is not None else now_ms()
        applied = skipped = deleted = 0
        held: Optional[int] = checkpoint
        with self._write_lock, self._get_connection() as conn:
            for record in records:
                if self._has_unsynced(conn, record.id):
                    skipped += 1
                    if held is not None:
                        held = min(held, record.updated_at - 1)
                    continue
                record.last_synced_at = synced_at
                self._put_record(conn, record)
                applied += 1

            for entity_id in deleted_ids:
                if self._has_unsynced(conn, entity_id):
                    skipped += 1
                    # Deletes carry no timestamp
                    held = None if held is None or since is None else min(held, since)
                    continue
                cursor = conn.execute("DELETE FROM records WHERE id = ?", (entity_id,))
                deleted += cursor.rowcount

            if held is None:
                conn.execute("DELETE FROM checkpoints WHERE owner_id = ?", (owner_id,))
            else:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO checkpoints (owner_id, checkpoint, updated_at)
                    VALUES (?, ?, ?)
                    """,
                    (owner_id, held, datetime.now(timezone.utc).isoformat()),
                )
            conn.commit()

        if held != checkpoint:
            logger.debug(f"Pull checkpoint held at {held} (server {checkpoint}) for {skipped} skipped changes")
        return PullResult(applied=applied, skipped=skipped, deleted=deleted, checkpoint=held)

    def get_checkpoint(self, owner_id: str) -> Optional[int]:
        """Last pull checkpoint for an owner."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT checkpoint FROM checkpoints WHERE owner_id = ?",
                (owner_id,),
            ).fetchone()
        return row["checkpoint"] if row else None

    # === Maintenance ===

    def queue_stats(self) -> dict[str, int]:
        """Get statistics about the operation log."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT state, COUNT(*) as count
                FROM operations
                GROUP BY state
                """
            )
            return {row["state"]: row["count"] for row in cursor.fetchall()}

    def clear_synced(self, older_than_days: int = 7) -> int:
        """Clear Synced operations older than specified days."""
        cutoff = int((datetime.now(timezone.utc) - timedelta(days=older_than_days)).timestamp() * 1000)
        with self._write_lock, self._get_connection() as conn:
            cursor = conn.execute(
                """
                DELETE FROM operations
                WHERE state = ? AND updated_at < ?
                """,
                (OperationState.SYNCED.value, cutoff),
            )
            conn.commit()
            return cursor.rowcount

    def max_origin_timestamp(self) -> int:
        """Largest origin timestamp in the log, to seed the logical clock."""
        with self._get_connection() as conn:
            row = conn.execute("SELECT COALESCE(MAX(origin_timestamp), 0) AS ts FROM operations").fetchone()
        return row["ts"]
