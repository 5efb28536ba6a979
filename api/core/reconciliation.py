"""
Server-side reconciliation of client operations.

Every mutation is gated by optimistic concurrency: the stored version must
equal the operation's ``base_version``. The version bump is a single
conditional UPDATE, so two writers racing on the same record cannot both
succeed. Accepted operations are written to the audit log in the same
transaction; a retried operation id is answered from that log instead of
being applied twice.
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import HTTPException, status
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.core.config import settings
from api.models.database import SyncAuditEntry, SyncRecord
from api.models.schemas import (
    OperationKind,
    OperationSubmit,
    PullResponse,
    RecordOut,
    SubmitResponse,
    SubmitStatus,
)

logger = logging.getLogger(__name__)


def server_now_ms() -> int:
    """Server wall clock in milliseconds."""
    return int(time.time() * 1000)


def payload_checksum(op: OperationSubmit) -> str:
    """Digest of everything that makes an operation what it is, minus its id."""
    canonical = json.dumps(
        {
            "kind": op.kind.value,
            "entity_type": op.entity_type,
            "entity_id": op.entity_id,
            "payload": op.payload,
            "base_version": op.base_version,
            "origin_timestamp": op.origin_timestamp,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class Reconciled:
    """Outcome of one operation, before it is turned into an HTTP response."""
    status: SubmitStatus
    record: Optional[RecordOut] = None
    replayed: bool = False

    @property
    def is_conflict(self) -> bool:
        return self.status == SubmitStatus.CONFLICT

    def to_response(self) -> SubmitResponse:
        return SubmitResponse(status=self.status, record=self.record, replayed=self.replayed)

    def to_audit(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "record": self.record.model_dump() if self.record else None,
        }


# =============================================================================
# Helpers
# =============================================================================

async def _load_record(db: AsyncSession, entity_id: str) -> Optional[SyncRecord]:
    result = await db.execute(
        select(SyncRecord)
        .where(SyncRecord.id == entity_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _find_replay(
    db: AsyncSession,
    owner_id: str,
    op: OperationSubmit,
    checksum: str,
) -> Optional[Reconciled]:
    entry = await db.get(SyncAuditEntry, op.operation_id)
    if entry is None:
        return None

    if entry.owner_id != owner_id or entry.payload_checksum != checksum:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Operation {op.operation_id} was already applied with a different payload",
        )

    stored = entry.result or {}
    logger.info(f"Replayed operation {op.operation_id} for {op.entity_id}")
    return Reconciled(
        status=SubmitStatus(stored.get("status", SubmitStatus.APPLIED.value)),
        record=RecordOut(**stored["record"]) if stored.get("record") else None,
        replayed=True,
    )


def _check_owner(record: SyncRecord, owner_id: str) -> None:
    if record.owner_id != owner_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Record {record.id} belongs to another owner",
        )


def _conflict(record: SyncRecord) -> Reconciled:
    return Reconciled(status=SubmitStatus.CONFLICT, record=RecordOut.model_validate(record))


# =============================================================================
# Mutations
# =============================================================================

async def _apply_create(db: AsyncSession, owner_id: str, op: OperationSubmit) -> Reconciled:
    existing = await _load_record(db, op.entity_id)
    if existing is not None:
        _check_owner(existing, owner_id)
        # Any stored version is >= 1, so a create can never match it
        return _conflict(existing)

    record = SyncRecord(
        id=op.entity_id,
        owner_id=owner_id,
        entity_type=op.entity_type,
        data=dict(op.payload),
        version=1,
        updated_at=server_now_ms(),
    )
    db.add(record)
    await db.flush()
    return Reconciled(status=SubmitStatus.APPLIED, record=RecordOut.model_validate(record))


async def _apply_update(db: AsyncSession, owner_id: str, op: OperationSubmit) -> Reconciled:
    current = await _load_record(db, op.entity_id)
    if current is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Record {op.entity_id} not found",
        )
    _check_owner(current, owner_id)

    if current.version != op.base_version:
        return _conflict(current)

    merged = {**(current.data or {}), **op.payload}
    result = await db.execute(
        update(SyncRecord)
        .where(SyncRecord.id == op.entity_id, SyncRecord.version == op.base_version)
        .values(data=merged, version=SyncRecord.version + 1, updated_at=server_now_ms())
        .execution_options(synchronize_session=False)
    )

    refreshed = await _load_record(db, op.entity_id)
    if result.rowcount == 0:
        # Lost the compare-and-swap to a concurrent writer
        return _conflict(refreshed)
    return Reconciled(status=SubmitStatus.APPLIED, record=RecordOut.model_validate(refreshed))


async def _apply_delete(db: AsyncSession, owner_id: str, op: OperationSubmit) -> Reconciled:
    current = await _load_record(db, op.entity_id)
    if current is not None:
        _check_owner(current, owner_id)
        await db.delete(current)
        await db.flush()
    return Reconciled(status=SubmitStatus.DELETED)


_HANDLERS = {
    OperationKind.CREATE: _apply_create,
    OperationKind.UPDATE: _apply_update,
    OperationKind.DELETE: _apply_delete,
}


async def reconcile_operation(
    db: AsyncSession,
    owner_id: str,
    op: OperationSubmit,
) -> Reconciled:
    """
    Apply one client operation.

    Returns:
        Reconciled with status applied, deleted or conflict

    Raises:
        HTTPException: 403 foreign record, 404 update of a missing record,
            422 operation id reused with a different payload
    """
    checksum = payload_checksum(op)

    replay = await _find_replay(db, owner_id, op, checksum)
    if replay is not None:
        return replay

    try:
        outcome = await _HANDLERS[op.kind](db, owner_id, op)
        if outcome.is_conflict:
            await db.rollback()
            logger.info(
                f"Conflict on {op.entity_id}: base v{op.base_version}, "
                f"server v{outcome.record.version}"
            )
            return outcome

        db.add(SyncAuditEntry(
            operation_id=op.operation_id,
            owner_id=owner_id,
            entity_type=op.entity_type,
            entity_id=op.entity_id,
            kind=op.kind.value,
            payload_checksum=checksum,
            result=outcome.to_audit(),
            applied_at=server_now_ms(),
        ))
        await db.commit()

    except IntegrityError:
        await db.rollback()
        # A concurrent request won the insert: either the same operation or
        # another create of the same record
        replay = await _find_replay(db, owner_id, op, checksum)
        if replay is not None:
            return replay
        current = await _load_record(db, op.entity_id)
        if current is None:
            raise
        _check_owner(current, owner_id)
        return _conflict(current)

    except HTTPException:
        await db.rollback()
        raise

    logger.debug(f"Applied {op.kind.value} {op.operation_id} to {op.entity_id}")
    return outcome


# =============================================================================
# Pull
# =============================================================================

async def fetch_changes(
    db: AsyncSession,
    owner_id: str,
    since: Optional[int] = None,
) -> PullResponse:
    """
    Records of ``owner_id`` changed after ``since`` plus ids deleted since then.

    Timestamps are stamped before commit, so a slow transaction can become
    visible after a pull whose checkpoint is already past its stamp. The
    checkpoint therefore trails the clock by ``pull_checkpoint_margin_ms``
    (never moving back before ``since``); changes inside that window are
    returned again by the next pull, which clients overlay idempotently.
    """
    checkpoint = server_now_ms() - settings.pull_checkpoint_margin_ms
    if since is not None:
        checkpoint = max(checkpoint, since)

    query = select(SyncRecord).where(SyncRecord.owner_id == owner_id)
    if since is not None:
        query = query.where(SyncRecord.updated_at > since)
    result = await db.execute(query.order_by(SyncRecord.updated_at))
    records = [RecordOut.model_validate(r) for r in result.scalars().all()]

    deletes = select(SyncAuditEntry.entity_id).where(
        SyncAuditEntry.owner_id == owner_id,
        SyncAuditEntry.kind == OperationKind.DELETE.value,
    )
    if since is not None:
        deletes = deletes.where(SyncAuditEntry.applied_at > since)
    result = await db.execute(deletes.order_by(SyncAuditEntry.applied_at))

    # A record recreated after its deletion is reported as a record only
    live_ids = {r.id for r in records}
    deleted_ids: list[str] = []
    for entity_id in result.scalars().all():
        if entity_id not in live_ids and entity_id not in deleted_ids:
            deleted_ids.append(entity_id)

    return PullResponse(records=records, deleted_ids=deleted_ids, checkpoint=checkpoint)
