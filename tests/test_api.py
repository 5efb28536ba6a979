"""
API Backend Tests

Tests for the reconciliation endpoints, schemas, and core functionality.
"""

import time
import uuid
from datetime import timedelta

import pytest


def new_id() -> str:
    return uuid.uuid4().hex


def make_op(entity_id, kind="create", base_version=0, payload=None, operation_id=None, ts=1000):
    return {
        "operation_id": operation_id or new_id(),
        "kind": kind,
        "entity_type": "note",
        "entity_id": entity_id,
        "payload": payload if payload is not None else {"title": "hello"},
        "base_version": base_version,
        "origin_timestamp": ts,
    }


# Test imports work
def test_api_imports():
    """Test that all API modules can be imported without errors."""
    from api.main import app
    from api.core.config import Settings
    from api.core.security import create_access_token, decode_token
    from api.core.reconciliation import reconcile_operation, fetch_changes
    from api.models.schemas import OperationSubmit, PullResponse, SubmitResponse

    assert app is not None
    assert Settings is not None


def test_settings_defaults():
    """Test that settings have sensible defaults."""
    from api.core.config import Settings

    settings = Settings()
    assert settings.app_name == "Offline Sync API"
    assert settings.environment in ["development", "staging", "production"]
    assert settings.jwt_algorithm == "HS256"
    assert settings.jwt_access_token_expire_minutes > 0
    assert settings.api_v1_prefix == "/api/v1"


def test_origins_parsed_from_string():
    from api.core.config import Settings

    settings = Settings(allowed_origins="http://a.test, http://b.test")
    assert settings.allowed_origins == ["http://a.test", "http://b.test"]


def test_token_creation_and_decode():
    """Test JWT token creation and decoding."""
    from api.core.security import create_access_token, decode_token

    token = create_access_token("owner-1")

    assert isinstance(token, str)
    decoded = decode_token(token)
    assert decoded.sub == "owner-1"
    assert decoded.exp > decoded.iat


def test_expired_token_rejected():
    from fastapi import HTTPException
    from api.core.security import create_access_token, decode_token

    token = create_access_token("owner-1", expires_delta=timedelta(seconds=-5))

    with pytest.raises(HTTPException) as exc_info:
        decode_token(token)
    assert exc_info.value.status_code == 401


def test_operation_schema():
    """Test OperationSubmit schema validation."""
    from api.models.schemas import OperationKind, OperationSubmit
    from pydantic import ValidationError

    op = OperationSubmit(**make_op("rec-1"))
    assert op.kind == OperationKind.CREATE

    # Negative base version
    with pytest.raises(ValidationError):
        OperationSubmit(**make_op("rec-1", base_version=-1))

    # Unknown kind
    with pytest.raises(ValidationError):
        OperationSubmit(**make_op("rec-1", kind="upsert"))

    # Empty entity id
    with pytest.raises(ValidationError):
        OperationSubmit(**make_op(""))


def test_payload_checksum_ignores_operation_id():
    """Test the replay checksum covers the mutation but not its id."""
    from api.core.reconciliation import payload_checksum
    from api.models.schemas import OperationSubmit

    first = OperationSubmit(**make_op("rec-1", operation_id="a"))
    same = OperationSubmit(**make_op("rec-1", operation_id="b"))
    changed = OperationSubmit(**make_op("rec-1", operation_id="a", payload={"title": "other"}))

    assert payload_checksum(first) == payload_checksum(same)
    assert payload_checksum(first) != payload_checksum(changed)


class TestAPIEndpoints:
    """Test API endpoint responses."""

    @pytest.fixture
    def client(self):
        """Create test client; the lifespan creates the tables."""
        from fastapi.testclient import TestClient
        from api.main import app

        with TestClient(app) as client:
            yield client

    @pytest.fixture
    def auth(self):
        """Bearer headers for a fresh owner."""
        from api.core.security import create_access_token

        def headers(owner_id=None):
            return {"Authorization": f"Bearer {create_access_token(owner_id or new_id())}"}

        return headers

    def submit(self, client, headers, body):
        return client.post("/api/v1/sync/operations", json=body, headers=headers)

    def test_health_endpoint(self, client):
        """Test health check endpoint."""
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "connected"

    def test_health_head(self, client):
        """Test the liveness probe method."""
        assert client.head("/health").status_code == 200

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["endpoints"]["pull"] == "/api/v1/sync/pull"

    def test_openapi_schema(self, client):
        """Test OpenAPI schema is generated."""
        response = client.get("/api/openapi.json")
        assert response.status_code == 200
        schema = response.json()
        assert "/api/v1/sync/operations" in schema["paths"]
        assert "/api/v1/sync/pull" in schema["paths"]

    def test_requires_token(self, client):
        response = client.post("/api/v1/sync/operations", json=make_op(new_id()))
        assert response.status_code in (401, 403)

    def test_invalid_token(self, client):
        response = self.submit(client, {"Authorization": "Bearer garbage"}, make_op(new_id()))
        assert response.status_code == 401

    def test_create(self, client, auth):
        """Test an accepted create starts at version 1."""
        entity_id = new_id()
        response = self.submit(client, auth(), make_op(entity_id))

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "applied"
        assert data["replayed"] is False
        assert data["record"]["id"] == entity_id
        assert data["record"]["version"] == 1
        assert data["record"]["data"] == {"title": "hello"}

    def test_update_merges_and_bumps_version(self, client, auth):
        headers = auth()
        entity_id = new_id()
        self.submit(client, headers, make_op(entity_id, payload={"title": "a", "body": "x"}))

        response = self.submit(
            client, headers, make_op(entity_id, "update", base_version=1, payload={"body": "y"})
        )

        assert response.status_code == 200
        record = response.json()["record"]
        assert record["version"] == 2
        assert record["data"] == {"title": "a", "body": "y"}

    def test_stale_update_conflicts(self, client, auth):
        """Test a mutation against an old version returns 409 with the server record."""
        headers = auth()
        entity_id = new_id()
        self.submit(client, headers, make_op(entity_id))
        self.submit(client, headers, make_op(entity_id, "update", base_version=1, payload={"title": "v2"}))

        response = self.submit(
            client, headers, make_op(entity_id, "update", base_version=1, payload={"title": "late"})
        )

        assert response.status_code == 409
        data = response.json()
        assert data["status"] == "conflict"
        assert data["record"]["version"] == 2
        assert data["record"]["data"] == {"title": "v2"}

    def test_create_of_existing_record_conflicts(self, client, auth):
        headers = auth()
        entity_id = new_id()
        self.submit(client, headers, make_op(entity_id))

        response = self.submit(client, headers, make_op(entity_id, payload={"title": "again"}))

        assert response.status_code == 409
        assert response.json()["record"]["version"] == 1

    def test_replay_applies_once(self, client, auth):
        """Test resubmitting an operation id returns the stored result."""
        headers = auth()
        entity_id = new_id()
        self.submit(client, headers, make_op(entity_id))
        update = make_op(entity_id, "update", base_version=1, payload={"title": "v2"})

        first = self.submit(client, headers, update)
        second = self.submit(client, headers, update)

        assert first.json()["replayed"] is False
        assert second.status_code == 200
        assert second.json()["replayed"] is True
        assert second.json()["record"]["version"] == 2

        follow_up = self.submit(client, headers, make_op(entity_id, "update", base_version=2))
        assert follow_up.json()["record"]["version"] == 3

    def test_reused_id_with_different_payload(self, client, auth):
        headers = auth()
        op = make_op(new_id())
        self.submit(client, headers, op)

        response = self.submit(client, headers, {**op, "payload": {"title": "changed"}})

        assert response.status_code == 422

    def test_foreign_record_forbidden(self, client, auth):
        """Test an owner cannot mutate another owner's record."""
        entity_id = new_id()
        self.submit(client, auth("alice"), make_op(entity_id))

        update = self.submit(client, auth("mallory"), make_op(entity_id, "update", base_version=1))
        delete = self.submit(client, auth("mallory"), make_op(entity_id, "delete", base_version=1))

        assert update.status_code == 403
        assert delete.status_code == 403

    def test_update_missing_record(self, client, auth):
        response = self.submit(client, auth(), make_op(new_id(), "update", base_version=1))
        assert response.status_code == 404

    def test_delete_missing_record(self, client, auth):
        """Test deleting a record that does not exist succeeds."""
        response = self.submit(client, auth(), make_op(new_id(), "delete", payload={}))

        assert response.status_code == 200
        assert response.json()["status"] == "deleted"

    def race_after_first_load(self, owner_id, rival_body):
        """
        Patch record loading so a rival operation commits in its own session
        right after the request under test has read the record.
        """
        from unittest.mock import patch

        from api.core import reconciliation
        from api.models.database import AsyncSessionLocal
        from api.models.schemas import OperationSubmit

        real_load = reconciliation._load_record
        rival_outcomes = []

        async def load_then_race(db, entity_id):
            record = await real_load(db, entity_id)
            if not rival_outcomes:
                rival_outcomes.append(None)
                async with AsyncSessionLocal() as other:
                    rival_outcomes[0] = await reconciliation.reconcile_operation(
                        other, owner_id, OperationSubmit(**rival_body)
                    )
            return record

        return patch.object(reconciliation, "_load_record", side_effect=load_then_race), rival_outcomes

    def test_update_losing_compare_and_swap_conflicts(self, client, auth):
        """Test only one of two updates from the same base version is applied."""
        owner = new_id()
        headers = auth(owner)
        entity_id = new_id()
        self.submit(client, headers, make_op(entity_id, payload={"title": "v1"}))

        rival = make_op(entity_id, "update", base_version=1, payload={"title": "rival"})
        racing, rivals = self.race_after_first_load(owner, rival)
        with racing:
            response = self.submit(
                client, headers, make_op(entity_id, "update", base_version=1, payload={"title": "mine"})
            )

        assert rivals[0].status.value == "applied"
        assert rivals[0].record.version == 2
        assert response.status_code == 409
        assert response.json()["record"]["version"] == 2
        assert response.json()["record"]["data"] == {"title": "rival"}

        pulled = client.get("/api/v1/sync/pull", headers=headers).json()["records"]
        assert [(r["version"], r["data"]) for r in pulled] == [(2, {"title": "rival"})]

    def test_concurrent_create_conflicts(self, client, auth):
        """Test a create that loses the insert race gets the winner's record."""
        owner = new_id()
        headers = auth(owner)
        entity_id = new_id()

        racing, rivals = self.race_after_first_load(owner, make_op(entity_id, payload={"title": "rival"}))
        with racing:
            response = self.submit(client, headers, make_op(entity_id, payload={"title": "mine"}))

        assert rivals[0].status.value == "applied"
        assert response.status_code == 409
        assert response.json()["record"]["version"] == 1
        assert response.json()["record"]["data"] == {"title": "rival"}

        pulled = client.get("/api/v1/sync/pull", headers=headers).json()["records"]
        assert [(r["version"], r["data"]) for r in pulled] == [(1, {"title": "rival"})]

    def test_concurrent_retry_of_same_operation_is_replayed(self, client, auth):
        """Test a retry racing the original request is answered from the audit log."""
        owner = new_id()
        headers = auth(owner)
        op = make_op(new_id())

        racing, rivals = self.race_after_first_load(owner, op)
        with racing:
            response = self.submit(client, headers, op)

        assert rivals[0].replayed is False
        assert response.status_code == 200
        assert response.json()["replayed"] is True
        assert response.json()["record"]["version"] == 1

    def test_pull_since_checkpoint(self, client, auth, monkeypatch):
        """Test a pull returns only records changed after the checkpoint."""
        from api.core.config import settings

        monkeypatch.setattr(settings, "pull_checkpoint_margin_ms", 0)
        owner = new_id()
        headers = auth(owner)
        old_id, new_record_id, gone_id = new_id(), new_id(), new_id()
        self.submit(client, headers, make_op(old_id))
        self.submit(client, headers, make_op(gone_id))
        time.sleep(0.01)

        first = client.get("/api/v1/sync/pull", headers=headers)
        assert first.status_code == 200
        assert {r["id"] for r in first.json()["records"]} == {old_id, gone_id}
        checkpoint = first.json()["checkpoint"]

        time.sleep(0.01)
        self.submit(client, headers, make_op(new_record_id))
        self.submit(client, headers, make_op(gone_id, "delete", base_version=1, payload={}))

        second = client.get(
            "/api/v1/sync/pull",
            params={"since": checkpoint, "owner_id": owner},
            headers=headers,
        )
        data = second.json()
        assert [r["id"] for r in data["records"]] == [new_record_id]
        assert data["deleted_ids"] == [gone_id]
        assert data["checkpoint"] >= checkpoint

    def test_pull_returns_write_committed_after_checkpoint(self, client, auth):
        """Test a write stamped just before a pull but committed after it is not lost."""
        from unittest.mock import patch

        from api.core.config import settings

        owner = new_id()
        headers = auth(owner)
        pulled_at = int(time.time() * 1000)

        with patch("api.core.reconciliation.server_now_ms", return_value=pulled_at):
            first = client.get("/api/v1/sync/pull", headers=headers)
        checkpoint = first.json()["checkpoint"]
        assert checkpoint == pulled_at - settings.pull_checkpoint_margin_ms

        late_id = new_id()
        with patch("api.core.reconciliation.server_now_ms", return_value=pulled_at - 1):
            self.submit(client, headers, make_op(late_id))

        second = client.get(
            "/api/v1/sync/pull",
            params={"since": checkpoint, "owner_id": owner},
            headers=headers,
        )
        assert [r["id"] for r in second.json()["records"]] == [late_id]
        assert second.json()["checkpoint"] >= checkpoint

    def test_pull_is_owner_scoped(self, client, auth):
        owner = new_id()
        self.submit(client, auth("someone-else"), make_op(new_id()))

        response = client.get("/api/v1/sync/pull", headers=auth(owner))
        assert response.json()["records"] == []

        forbidden = client.get(
            "/api/v1/sync/pull",
            params={"owner_id": "someone-else"},
            headers=auth(owner),
        )
        assert forbidden.status_code == 403
