"""
Sync context: the explicit object that wires the client together.

One context owns the local store, the logical clock, the connectivity
monitor, the sync engine, the scheduler, the pull service and the state
channel. Nothing is global; tests and applications create as many contexts
as they need.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Callable, Optional

from .channel import SyncStateChannel
from .config import SyncConfig
from .connectivity import ConnectivityMonitor
from .engine import SyncEngine
from .errors import RecordNotFoundError
from .models import (
    ConnectivityState,
    Listener,
    LogicalClock,
    Operation,
    OperationKind,
    OperationState,
    PassResult,
    PullResult,
    Record,
    SyncState,
    now_ms,
)
from .pull import PullService
from .scheduler import SyncScheduler
from .store import LocalStore
from .transport import HttpTransport, Transport

logger = logging.getLogger(__name__)


class SyncContext:
    """
    Entry point for applications.

    Local mutations go through ``enqueue_mutation`` which writes the record
    and appends its operation atomically, then nudges the scheduler. Sync
    progress is observed with ``subscribe_sync_state``.
    """

    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        transport: Optional[Transport] = None,
        auth_headers: Optional[Callable[[], dict[str, str]]] = None,
        clock: Callable[[], int] = now_ms,
        platform_online: bool = True,
    ):
        self.config = config or SyncConfig()
        self.store = LocalStore(self.config.db_path)
        self.clock = LogicalClock(wall=clock, last=self.store.max_origin_timestamp())

        if transport is None:
            transport = HttpTransport(self.config, auth_headers=auth_headers or self._bearer_headers)
            self._owns_transport = True
        else:
            self._owns_transport = False
        self.transport = transport

        self.channel = SyncStateChannel()
        self.connectivity = ConnectivityMonitor(self.transport, self.config, platform_online)
        self.engine = SyncEngine(
            self.store,
            self.transport,
            self.connectivity,
            self.channel,
            self.config,
            clock=clock,
        )
        self.pull_service = PullService(
            self.store,
            self.transport,
            self.connectivity,
            default_owner_id=self.config.owner_id,
        )
        self.scheduler = SyncScheduler(self.engine, self.connectivity, self.config, pull=self.pull_service)
        self.engine.on_retry = self.scheduler.schedule_retry
        self._started = False

    def _bearer_headers(self) -> dict[str, str]:
        if self.config.access_token:
            return {"Authorization": f"Bearer {self.config.access_token}"}
        return {}

    # === Lifecycle ===

    async def start(self) -> None:
        """Recover the local store, then start scheduling and connectivity checks."""
        if self._started:
            return
        recovered = self.store.recover()
        cleared = self.store.clear_synced(self.config.synced_retention_days)
        if cleared:
            logger.debug(f"Cleared {cleared} synced operations from the log")

        # Scheduler first so the initial offline -> online transition triggers a pass
        await self.scheduler.start()
        await self.connectivity.start()
        self._started = True
        logger.info(
            f"Sync context started ({self.connectivity.state.value}, "
            f"{recovered['released']} operations recovered)"
        )

    async def close(self) -> None:
        """Stop timers, let a running pass finish and release the transport."""
        await self.scheduler.stop()
        await self.connectivity.stop()
        if self._owns_transport:
            await self.transport.close()
        self._started = False
        logger.info("Sync context closed")

    async def __aenter__(self) -> "SyncContext":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # === Local mutations ===

    def enqueue_mutation(
        self,
        kind: OperationKind,
        entity_type: str,
        entity_id: Optional[str],
        payload: Optional[dict] = None,
    ) -> Operation:
        """
        Apply a mutation locally and queue it for sync.

        Args:
            kind: create, update or delete
            entity_type: Logical type of the record
            entity_id: Record id (generated for creates when None)
            payload: Full data for creates, changed fields for updates

        Returns:
            The queued Operation

        Raises:
            RecordNotFoundError: update or delete of an unknown record
            DuplicateRecordError: create with an id that already exists
            StorageError: the local store failed
        """
        kind = OperationKind(kind)
        payload = dict(payload or {})
        timestamp = self.clock.tick()

        if kind == OperationKind.CREATE:
            entity_id = entity_id or str(uuid.uuid4())
            record = Record(
                id=entity_id,
                entity_type=entity_type,
                owner_id=self.config.owner_id,
                data=payload,
                version=0,
                updated_at=timestamp,
            )
            op = Operation.new(kind, entity_type, entity_id, payload, 0, timestamp)
            self.store.write_with_operation(record, op, create=True)

        else:
            if not entity_id:
                raise ValueError(f"entity_id is required for {kind.value}")
            record = self.store.read(entity_id)
            if record is None:
                raise RecordNotFoundError(entity_id)
            if record.entity_type != entity_type:
                raise ValueError(
                    f"Record {entity_id} is a {record.entity_type}, not a {entity_type}"
                )

            op = Operation.new(kind, entity_type, entity_id, payload, record.version, timestamp)
            if kind == OperationKind.UPDATE:
                record.data = {**record.data, **payload}
                record.updated_at = timestamp
                self.store.write_with_operation(record, op)
            else:
                self.store.delete_with_operation(entity_id, op)

        self.scheduler.notify_local_write()
        return op

    def create(self, entity_type: str, data: dict, entity_id: Optional[str] = None) -> Operation:
        return self.enqueue_mutation(OperationKind.CREATE, entity_type, entity_id, data)

    def update(self, entity_type: str, entity_id: str, changes: dict) -> Operation:
        return self.enqueue_mutation(OperationKind.UPDATE, entity_type, entity_id, changes)

    def delete(self, entity_type: str, entity_id: str) -> Operation:
        return self.enqueue_mutation(OperationKind.DELETE, entity_type, entity_id)

    # === Reads ===

    def read(self, entity_id: str) -> Optional[Record]:
        return self.store.read(entity_id)

    def list_records(self, entity_type: Optional[str] = None) -> list[Record]:
        return self.store.list_records(entity_type=entity_type)

    def failed_operations(self) -> list[Operation]:
        """Operations that need the user's attention."""
        return self.store.list_operations(state=OperationState.FAILED)

    def pending_operations(self) -> list[Operation]:
        return self.store.list_operations(exclude_state=OperationState.SYNCED)

    def queue_stats(self) -> dict[str, int]:
        return self.store.queue_stats()

    # === Sync control ===

    def subscribe_sync_state(self, listener: Listener) -> Callable[[], None]:
        """Observe sync progress; returns the unsubscribe handle."""
        return self.channel.subscribe(listener)

    @property
    def sync_state(self) -> SyncState:
        return self.channel.state

    @property
    def connectivity_state(self) -> ConnectivityState:
        return self.connectivity.state

    def set_platform_online(self, online: bool) -> None:
        self.connectivity.set_platform_online(online)

    def request_sync(self) -> None:
        """Ask for a sync pass as soon as possible."""
        self.scheduler.request_sync()

    async def sync_now(self) -> Optional[PassResult]:
        """Run a pass (or join the running one) and wait for it; None when no pass could run."""
        return await self.scheduler.sync_now()

    def manual_retry(self, operation_id: str) -> Operation:
        """Give a Failed operation a fresh attempt budget and sync again."""
        op = self.engine.reset_operation(operation_id)
        self.scheduler.cancel_retry(operation_id)
        self.scheduler.trigger("manual_retry")
        return op

    def discard_operation(self, operation_id: str) -> Operation:
        """
        Drop a Failed or Pending operation from the log.

        Unblocks operations queued after it for the same entity. Discarding
        the create of a record that never reached the server also removes
        the local record.
        """
        op = self.store.get_operation(operation_id)
        if op.state not in (OperationState.FAILED, OperationState.PENDING):
            raise ValueError(f"Operation {operation_id} is {op.state.value} and cannot be discarded")

        self.store.remove_operation(operation_id)
        self.scheduler.cancel_retry(operation_id)

        if op.kind == OperationKind.CREATE:
            record = self.store.read(op.entity_id)
            if record and record.version == 0 and record.last_synced_at is None:
                self.store.delete(op.entity_id)

        logger.info(f"Discarded {op.kind.value} operation {operation_id} for {op.entity_id}")
        self.scheduler.trigger("discard")
        return op

    async def pull(self, since: Optional[int] = None) -> PullResult:
        return await self.pull_service.pull(self.config.owner_id, since=since)


# =============================================================================
# Convenience Functions
# =============================================================================

@asynccontextmanager
async def sync_session(config: Optional[SyncConfig] = None, **kwargs):
    """
    Context manager for a sync session.

    Usage:
        async with sync_session(config) as ctx:
            ctx.create("note", {"title": "hello"})
    """
    ctx = SyncContext(config, **kwargs)
    await ctx.start()
    try:
        yield ctx
    finally:
        await ctx.close()
