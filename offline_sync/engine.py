"""
Sync engine: drains the operation log against the reconciliation API.

A pass snapshots the eligible Pending operations, groups them into
per-entity chains, packs whole chains into bounded batches and dispatches
each batch with chains running concurrently and the operations of a chain
running strictly one after another.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from .channel import SyncStateChannel
from .config import SyncConfig
from .connectivity import ConnectivityMonitor
from .errors import AlreadyInProgressError, OfflineError, RejectedError, TransientError
from .models import (
    Decision,
    FailureKind,
    FailureNotice,
    Operation,
    OperationKind,
    OperationState,
    PassResult,
    Resolution,
    SyncState,
    SyncStatus,
    now_ms,
)
from .resolver import resolve
from .store import LocalStore
from .transport import Transport

logger = logging.getLogger(__name__)

Chain = list[Operation]
RetryCallback = Callable[[str, float], None]


def plan_batches(chains: list[Chain], max_batch_size: int) -> tuple[list[list[Chain]], bool]:
    """
    Pack entity chains into batches of at most ``max_batch_size`` operations.

    A chain is never split across batches. A chain longer than a whole batch
    is cut to its first ``max_batch_size`` operations; the tail waits for the
    next pass.

    Returns:
        (batches, truncated) where truncated tells whether any chain was cut
    """
    batches: list[list[Chain]] = []
    current: list[Chain] = []
    size = 0
    truncated = False

    for chain in chains:
        if len(chain) > max_batch_size:
            chain = chain[:max_batch_size]
            truncated = True
        if current and size + len(chain) > max_batch_size:
            batches.append(current)
            current, size = [], 0
        current.append(chain)
        size += len(chain)

    if current:
        batches.append(current)
    return batches, truncated


@dataclass
class _PassTally:
    synced: int = 0
    dropped: int = 0
    retried: int = 0
    requeued: int = 0
    held: int = 0
    failed: list[FailureNotice] = field(default_factory=list)


class SyncEngine:
    """Single-flight drainer of the operation log."""

    def __init__(
        self,
        store: LocalStore,
        transport: Transport,
        connectivity: ConnectivityMonitor,
        channel: SyncStateChannel,
        config: SyncConfig,
        clock: Callable[[], int] = now_ms,
        on_retry: Optional[RetryCallback] = None,
    ):
        self.store = store
        self.transport = transport
        self.connectivity = connectivity
        self.channel = channel
        self.config = config
        self.clock = clock
        self.on_retry = on_retry
        self.last_result: Optional[PassResult] = None
        self._in_progress = False
        self._selected: list[str] = []

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    # === Public API ===

    async def run_sync_pass(self) -> PassResult:
        """
        Drain the operation log once.

        Raises:
            AlreadyInProgressError: a pass is already running
            OfflineError: connectivity is not Online
        """
        if self._in_progress:
            raise AlreadyInProgressError("A sync pass is already running")
        if not self.connectivity.is_online:
            raise OfflineError(f"Cannot sync while {self.connectivity.state.value}")

        self._in_progress = True
        self._selected = []
        start_time = time.time()
        try:
            result = await asyncio.wait_for(self._drain(), timeout=self.config.pass_timeout)
        except asyncio.TimeoutError:
            message = f"Sync pass timed out after {self.config.pass_timeout}s"
            logger.error(message)
            result = PassResult(
                status=SyncStatus.ERROR,
                total=len(self._selected),
                error=message,
            )
            self.channel.finish(SyncState(status=SyncStatus.ERROR, total=len(self._selected), error=message))
        except Exception as e:
            logger.exception("Sync pass failed")
            self.channel.finish(SyncState(status=SyncStatus.ERROR, total=len(self._selected), error=str(e)))
            raise
        finally:
            if self._selected:
                self.store.release_in_flight(self._selected)
            self._in_progress = False

        result.duration_seconds = time.time() - start_time
        self.last_result = result
        return result

    def select_operations(self) -> list[Chain]:
        """
        Snapshot the operations eligible for this pass, grouped per entity.

        Each entity contributes the prefix of its unsynced operations that are
        Pending, under the attempt cap and due. A Failed, in-flight or
        backing-off operation holds back everything queued after it for the
        same entity.
        """
        now = self.clock()
        chains: dict[str, Chain] = {}
        blocked: set[str] = set()

        for op in self.store.list_operations(exclude_state=OperationState.SYNCED):
            if op.entity_id in blocked:
                continue
            eligible = (
                op.state == OperationState.PENDING
                and op.attempt < self.config.max_attempts
                and (op.next_attempt_at is None or op.next_attempt_at <= now)
            )
            if not eligible:
                blocked.add(op.entity_id)
                continue
            chains.setdefault(op.entity_id, []).append(op)

        return list(chains.values())

    def reset_operation(self, op_id: str) -> Operation:
        """Re-admit a Failed (or backing-off) operation with a fresh attempt budget."""
        op = self.store.get_operation(op_id)
        if op.state not in (OperationState.FAILED, OperationState.PENDING):
            raise ValueError(f"Operation {op_id} is {op.state.value} and cannot be retried")
        logger.info(f"Manual retry of operation {op_id} ({op.kind.value} {op.entity_id})")
        return self.store.update_operation(
            op_id,
            state=OperationState.PENDING,
            attempt=0,
            last_error=None,
            failure=None,
            next_attempt_at=None,
        )

    # === Pass internals ===

    async def _drain(self) -> PassResult:
        chains = self.select_operations()
        batches, truncated = plan_batches(chains, self.config.max_batch_size)
        total = sum(len(chain) for batch in batches for chain in batch)
        self._selected = [op.id for batch in batches for chain in batch for op in chain]

        self.channel.begin_pass(total)
        if total:
            logger.info(f"Sync pass: {total} operations in {len(batches)} batches")

        tally = _PassTally()
        completed = 0
        for batch in batches:
            batch_ids = [op.id for chain in batch for op in chain]
            self.store.mark_in_flight(batch_ids)
            await asyncio.gather(*(self._dispatch_chain(chain, tally) for chain in batch))
            completed += len(batch_ids)
            self.channel.progress(completed, total)

        if tally.failed or tally.retried:
            status = SyncStatus.PARTIAL_FAILURE
        else:
            status = SyncStatus.SUCCESS

        self.channel.finish(SyncState(
            status=status,
            completed=completed,
            total=total,
            notices=list(tally.failed),
        ))

        if total:
            logger.info(
                f"Sync pass finished ({status.value}): {tally.synced} synced, "
                f"{tally.dropped} superseded, {tally.requeued} requeued, "
                f"{tally.retried} retrying, {len(tally.failed)} failed, {tally.held} held"
            )

        return PassResult(
            status=status,
            total=total,
            completed=completed,
            synced=tally.synced + tally.dropped,
            retried=tally.retried,
            requeued=tally.requeued,
            failed=list(tally.failed),
            needs_rerun=truncated or tally.requeued > 0,
        )

    async def _dispatch_chain(self, chain: Chain, tally: _PassTally) -> None:
        """Send one entity's operations in order, each after the previous resolved."""
        rebase_to: Optional[int] = None

        for index, op in enumerate(chain):
            if rebase_to is not None and op.kind != OperationKind.CREATE and op.base_version != rebase_to:
                # Already rebased in the store when the predecessor was accepted
                op = replace(op, base_version=rebase_to)

            resolution = await self._dispatch_operation(op, tally)

            if resolution is None or resolution.decision == Decision.CLIENT_WINS:
                rest = [later.id for later in chain[index + 1:]]
                if rest:
                    self.store.release_in_flight(rest)
                    tally.held += len(rest)
                return

            if resolution.decision == Decision.ACCEPT and resolution.record is not None:
                rebase_to = resolution.record.version
            else:
                rebase_to = None

    async def _dispatch_operation(self, op: Operation, tally: _PassTally) -> Optional[Resolution]:
        try:
            outcome = await self.transport.submit_operation(op)
        except TransientError as e:
            self._record_transient_failure(op, str(e), tally)
            return None
        except RejectedError as e:
            self._record_rejection(op, str(e), tally)
            return None

        resolution = resolve(op, outcome)
        self._apply_resolution(op, resolution, tally)
        return resolution

    def _apply_resolution(self, op: Operation, resolution: Resolution, tally: _PassTally) -> None:
        if resolution.decision == Decision.ACCEPT:
            later_queued = self.store.has_unsynced_operations(op.entity_id, after_seq=op.seq)
            if resolution.record is not None:
                self.store.apply_server_record(resolution.record, preserve_local_fields=later_queued)
                if later_queued:
                    self.store.rebase_operations(op.entity_id, op.seq, resolution.record.version)
            elif op.kind == OperationKind.DELETE and not later_queued:
                self.store.delete(op.entity_id)
            self._mark_synced(op)
            tally.synced += 1

        elif resolution.decision == Decision.SERVER_WINS:
            self.store.apply_server_record(resolution.record)
            self._mark_synced(op, note="Superseded by newer server version")
            tally.dropped += 1
            logger.info(
                f"Conflict on {op.entity_id}: server wins "
                f"(server v{resolution.record.version}, op {op.id} dropped)"
            )

        elif resolution.decision == Decision.CLIENT_WINS:
            replacement = self.store.replace_operation(op.id, resolution.requeue)
            tally.requeued += 1
            logger.info(
                f"Conflict on {op.entity_id}: client wins, "
                f"requeued as {replacement.id} on base v{replacement.base_version}"
            )

    def _mark_synced(self, op: Operation, note: Optional[str] = None) -> None:
        self.store.update_operation(
            op.id,
            state=OperationState.SYNCED,
            last_error=note,
            failure=None,
            next_attempt_at=None,
        )

    def _record_transient_failure(self, op: Operation, error: str, tally: _PassTally) -> None:
        delay = self.config.retry_delay(op.attempt)
        attempt = op.attempt + 1

        if attempt >= self.config.max_attempts:
            failed = self.store.update_operation(
                op.id,
                state=OperationState.FAILED,
                attempt=attempt,
                last_error=error,
                failure=FailureKind.EXHAUSTED,
                next_attempt_at=None,
            )
            tally.failed.append(FailureNotice.from_operation(failed))
            logger.error(f"Operation {op.id} failed after {attempt} attempts: {error}")
            return

        self.store.update_operation(
            op.id,
            state=OperationState.PENDING,
            attempt=attempt,
            last_error=error,
            next_attempt_at=self.clock() + int(delay * 1000),
        )
        tally.retried += 1
        logger.warning(f"Operation {op.id} attempt {attempt} failed: {error}, retry in {delay}s")
        if self.on_retry:
            self.on_retry(op.id, delay)

    def _record_rejection(self, op: Operation, error: str, tally: _PassTally) -> None:
        failed = self.store.update_operation(
            op.id,
            state=OperationState.FAILED,
            attempt=op.attempt + 1,
            last_error=error,
            failure=FailureKind.REJECTED,
            next_attempt_at=None,
        )
        tally.failed.append(FailureNotice.from_operation(failed))
        logger.error(f"Operation {op.id} rejected by server: {error}")
