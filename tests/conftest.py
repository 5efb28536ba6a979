"""
Shared fixtures.

The server settings are read from the environment at import time, so the
test database URL is set here before anything imports ``api``.
"""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Optional

import pytest

_TEST_DB_DIR = tempfile.mkdtemp(prefix="offline_sync_api_")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{Path(_TEST_DB_DIR) / 'server.db'}")
os.environ.setdefault("ENVIRONMENT", "development")

from offline_sync.config import SyncConfig  # noqa: E402
from offline_sync.context import SyncContext  # noqa: E402
from offline_sync.errors import RejectedError  # noqa: E402
from offline_sync.models import (  # noqa: E402
    Applied,
    ChangeSet,
    Conflict,
    Operation,
    OperationKind,
    Record,
)
from offline_sync.transport import Transport  # noqa: E402


# =============================================================================
# Fakes
# =============================================================================

class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeTransport(Transport):
    """
    In-memory reconciliation server.

    Follows the endpoint contract: versioned creates and updates, deletes
    that succeed on missing records, replay of known operation ids.
    ``failures`` are raised (in order) before an operation is looked at; a
    ``None`` entry lets that submission through.
    """

    def __init__(self, server_time: int = 500):
        self.server: dict[str, Record] = {}
        self.deleted_ids: list[str] = []
        self.server_time = server_time
        self.submitted: list[Operation] = []
        self.failures: list[Exception] = []
        self.results: dict[str, Applied] = {}
        self.reachable = True
        self.probe_delay: Optional[float] = None
        self.gate: Optional[asyncio.Event] = None
        self.probes = 0

    def _tick(self) -> int:
        self.server_time += 1
        return self.server_time

    def seed(self, record: Record) -> Record:
        self.server[record.id] = record
        return record

    async def submit_operation(self, op: Operation):
        self.submitted.append(op)
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            failure = self.failures.pop(0)
            if failure is not None:
                raise failure
        if op.id in self.results:
            stored = self.results[op.id]
            return Applied(record=stored.record, deleted=stored.deleted, replayed=True)

        current = self.server.get(op.entity_id)

        if op.kind == OperationKind.CREATE:
            if current is not None:
                return Conflict(server_record=Record.from_dict(current.to_dict()))
            record = Record(
                id=op.entity_id,
                entity_type=op.entity_type,
                owner_id="owner-1",
                data=dict(op.payload),
                version=1,
                updated_at=self._tick(),
            )
            self.server[op.entity_id] = record
            outcome = Applied(record=Record.from_dict(record.to_dict()))

        elif op.kind == OperationKind.UPDATE:
            if current is None:
                raise RejectedError(f"HTTP 404: Record {op.entity_id} not found", status_code=404)
            if current.version != op.base_version:
                return Conflict(server_record=Record.from_dict(current.to_dict()))
            current.data = {**current.data, **op.payload}
            current.version += 1
            current.updated_at = self._tick()
            outcome = Applied(record=Record.from_dict(current.to_dict()))

        else:
            self.server.pop(op.entity_id, None)
            self.deleted_ids.append(op.entity_id)
            outcome = Applied(deleted=True)

        self.results[op.id] = outcome
        return outcome

    async def fetch_changes(self, owner_id: str, since: Optional[int]) -> ChangeSet:
        checkpoint = self._tick()
        records = [
            Record.from_dict(r.to_dict())
            for r in self.server.values()
            if since is None or r.updated_at > since
        ]
        return ChangeSet(records=records, deleted_ids=list(self.deleted_ids), checkpoint=checkpoint)

    async def probe(self) -> bool:
        self.probes += 1
        if self.probe_delay is not None:
            await asyncio.sleep(self.probe_delay)
        return self.reachable


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def config(tmp_path):
    """Client configuration with fast timers and a private store."""
    return SyncConfig(
        cache_dir=tmp_path / "client",
        owner_id="owner-1",
        debounce_window=0.01,
        periodic_interval=3600,
        probe_interval=3600,
        probe_timeout=0.2,
        pass_timeout=5.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def ctx(config, transport, clock):
    """Context wired to the fake server; timers are not started."""
    return SyncContext(config, transport=transport, clock=clock)


@pytest.fixture
async def online_ctx(ctx):
    """Context whose connectivity has been verified."""
    await ctx.connectivity.check()
    assert ctx.connectivity.is_online
    return ctx
