"""Tests for the PostgreSQL State Store (connection mocked)."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest

from vaultkube.sync.models import RunStatus, SecretState, SecretStatus, SyncRun, TriggerKind
from vaultkube.sync.store import StateStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture
def state_db():
    """Mock the database connection for StateStore tests."""
    with patch("vaultkube.sync.store.get_connection") as mock_conn:
        conn = MagicMock()
        cur = MagicMock()
        conn.__enter__ = MagicMock(return_value=conn)
        conn.__exit__ = MagicMock(return_value=False)
        conn.cursor.return_value = cur
        cur.rowcount = 1
        cur.fetchone.return_value = None
        cur.fetchall.return_value = []
        mock_conn.return_value = conn
        yield {"connection": mock_conn, "conn": conn, "cursor": cur}


def _row(**overrides):
    row = {
        "namespace": "default",
        "secret_name": "db-creds",
        "source_item_id": "item-1",
        "source_item_name": "DB creds",
        "status": "Active",
        "data_keys_count": 2,
        "fingerprint": "abc",
        "last_synced": NOW,
        "created_at": NOW,
        "last_error": None,
    }
    row.update(overrides)
    return row


class TestGet:
    def test_missing(self, state_db):
        assert StateStore().get("default", "nope") is None

    def test_found(self, state_db):
        state_db["cursor"].fetchone.return_value = _row(status="Failed", last_error="403")
        state = StateStore().get("default", "db-creds")
        assert state.status == SecretStatus.FAILED
        assert state.last_error == "403"
        assert state.data_keys_count == 2


class TestUpsert:
    def test_on_conflict_keeps_created_at(self, state_db):
        StateStore().upsert(SecretState("default", "db-creds", SecretStatus.ACTIVE, fingerprint="f"))
        sql, params = state_db["cursor"].execute.call_args[0]
        assert "INSERT INTO secret_states" in sql
        assert "ON CONFLICT (namespace, secret_name)" in sql
        assert "created_at =" not in sql
        assert params[:2] == ("default", "db-creds")
        assert "Active" in params

    def test_mark_deleted(self, state_db):
        StateStore().mark_deleted("default", "old", "gone")
        sql, params = state_db["cursor"].execute.call_args[0]
        assert "'Deleted'" in sql
        assert params == ("default", "old", "gone")


class TestQueries:
    def test_list_active_not_in(self, state_db):
        state_db["cursor"].fetchall.return_value = [_row(secret_name="stale")]
        states = StateStore().list_active_not_in("default", {"b", "a"})
        assert [s.secret_name for s in states] == ["stale"]
        params = state_db["cursor"].execute.call_args[0][1]
        assert params == ("default", ["a", "b"])

    def test_tracked_namespaces(self, state_db):
        state_db["cursor"].fetchall.return_value = [("a",), ("b",)]
        assert StateStore().list_tracked_namespaces() == {"a", "b"}

    def test_purge_returns_rowcount(self, state_db):
        state_db["cursor"].rowcount = 3
        assert StateStore().purge("default") == 3
        sql = state_db["cursor"].execute.call_args[0][0]
        assert "DELETE FROM secret_states" in sql


class TestSyncRuns:
    def test_append_is_jsonb(self, state_db):
        run = SyncRun(
            trigger=TriggerKind.WEBHOOK,
            started_at=NOW,
            finished_at=NOW,
            status=RunStatus.PARTIAL,
            namespaces={"default": {"created": 1}},
            errors=["default/bad: invalid"],
            selective_item_id="item-1",
        )
        StateStore().append_sync_run(run)
        sql, params = state_db["cursor"].execute.call_args[0]
        assert "INSERT INTO sync_runs" in sql
        assert params[1] == "webhook"
        assert params[4] == "PARTIAL"
        assert json.loads(params[8]) == {"default": {"created": 1}}
        assert json.loads(params[10]) == ["default/bad: invalid"]
