"""
Pull Path Tests
"""

import sqlite3
from unittest.mock import patch

import pytest

from offline_sync.errors import OfflineError, RejectedError, StorageError
from offline_sync.models import Record


def server_record(record_id, updated_at, version=1, **data):
    return Record(
        id=record_id,
        entity_type="note",
        owner_id="owner-1",
        data=data or {"title": record_id},
        version=version,
        updated_at=updated_at,
    )


async def test_pull_only_returns_changes_after_checkpoint(online_ctx, transport):
    """Test a pull since T brings only records changed after T."""
    transport.seed(server_record("old", updated_at=10))
    transport.seed(server_record("new", updated_at=20))

    result = await online_ctx.pull(since=15)

    assert result.applied == 1
    assert online_ctx.read("new") is not None
    assert online_ctx.read("old") is None
    assert online_ctx.store.get_checkpoint("owner-1") == result.checkpoint


async def test_stored_checkpoint_is_used_by_default(online_ctx, transport):
    seen = []
    fetch = transport.fetch_changes

    async def spy(owner_id, since):
        seen.append(since)
        return await fetch(owner_id, since)

    transport.fetch_changes = spy

    first = await online_ctx.pull()
    await online_ctx.pull()

    assert seen == [None, first.checkpoint]


async def test_pull_skips_entities_with_queued_changes(online_ctx, transport):
    """Test a local edit waiting to sync is not overwritten by the server copy."""
    online_ctx.create("note", {"title": "mine"}, entity_id="X")
    transport.seed(server_record("X", updated_at=999, version=4, title="theirs"))

    result = await online_ctx.pull()

    assert result.skipped == 1
    assert online_ctx.read("X").data == {"title": "mine"}
    assert online_ctx.read("X").version == 0


async def test_pull_applies_server_deletes(online_ctx, transport):
    online_ctx.store.write(server_record("gone", updated_at=1))
    transport.deleted_ids.append("gone")

    result = await online_ctx.pull()

    assert result.deleted == 1
    assert online_ctx.read("gone") is None


async def test_pulled_records_are_marked_synced(online_ctx, transport):
    transport.seed(server_record("A", updated_at=5, version=3))

    await online_ctx.pull()

    record = online_ctx.read("A")
    assert record.version == 3
    assert record.last_synced_at is not None


async def test_pull_offline(ctx):
    """Test pulling without verified connectivity raises."""
    with pytest.raises(OfflineError):
        await ctx.pull()


async def test_failed_apply_keeps_checkpoint(online_ctx, transport):
    """Test a storage failure mid-apply leaves records and checkpoint unchanged."""
    transport.seed(server_record("a", updated_at=5))
    transport.seed(server_record("b", updated_at=6))
    store = online_ctx.store
    real_put = type(store)._put_record
    calls = []

    def flaky_put(conn, record):
        calls.append(record.id)
        if len(calls) == 2:
            raise sqlite3.OperationalError("disk I/O error")
        real_put(conn, record)

    with patch.object(store, "_put_record", side_effect=flaky_put):
        with pytest.raises(StorageError):
            await online_ctx.pull()

    assert store.read("a") is None
    assert store.get_checkpoint("owner-1") is None


async def test_skipped_change_is_pulled_after_discard(online_ctx, transport):
    """Test a server change skipped behind a rejected edit arrives once the edit is discarded."""
    transport.seed(server_record("X", updated_at=10, version=1, title="v1"))
    await online_ctx.pull()
    edit = online_ctx.update("note", "X", {"title": "mine"})

    moved = transport.server["X"]
    moved.data = {"title": "v2"}
    moved.version = 2
    moved.updated_at = transport._tick()
    skipped = await online_ctx.pull()

    assert skipped.skipped == 1
    assert skipped.checkpoint < moved.updated_at

    transport.failures = [RejectedError("HTTP 422: invalid payload", status_code=422)]
    await online_ctx.engine.run_sync_pass()
    online_ctx.discard_operation(edit.id)

    result = await online_ctx.pull()

    assert result.applied == 1
    local = online_ctx.read("X")
    assert local.version == 2
    assert local.data == {"title": "v2"}
