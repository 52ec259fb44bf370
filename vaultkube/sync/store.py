"""
State Store — durable record of every Secret the engine has produced.

Backed by PostgreSQL (``secret_states`` and the append-only ``sync_runs``).
Rows are never hard-deleted by reconciliation: orphans move to Deleted so the
audit trail survives. Only the operator ``purge`` action removes rows.

Single-writer: callers hold the global sync lock, so no row locking is used.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from psycopg2.extras import RealDictCursor

from vaultkube.db.connection import get_connection
from vaultkube.sync.models import SecretState, SecretStatus, SyncRun

logger = logging.getLogger(__name__)

_COLUMNS = (
    "namespace, secret_name, source_item_id, source_item_name, status, "
    "data_keys_count, fingerprint, last_synced, created_at, last_error"
)


def _row_to_state(row: dict[str, Any]) -> SecretState:
    return SecretState(
        namespace=row["namespace"],
        secret_name=row["secret_name"],
        status=SecretStatus(row["status"]),
        source_item_id=row.get("source_item_id") or "",
        source_item_name=row.get("source_item_name") or "",
        data_keys_count=row.get("data_keys_count") or 0,
        fingerprint=row.get("fingerprint"),
        last_synced=row["last_synced"],
        created_at=row.get("created_at"),
        last_error=row.get("last_error"),
    )


class StateStore:
    """PostgreSQL-backed SecretState and SyncRun persistence."""

    def get(self, namespace: str, secret_name: str) -> SecretState | None:
        with get_connection() as conn:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            cur.execute(
                f"SELECT {_COLUMNS} FROM secret_states WHERE namespace = %s AND secret_name = %s",
                (namespace, secret_name),
            )
            row = cur.fetchone()
        return _row_to_state(row) if row else None

    def upsert(self, state: SecretState) -> None:
        """Insert or update a row. created_at is kept from the first insert."""
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO secret_states
                    (namespace, secret_name, source_item_id, source_item_name, status,
                     data_keys_count, fingerprint, last_synced, last_error)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (namespace, secret_name) DO UPDATE SET
                    source_item_id = EXCLUDED.source_item_id,
                    source_item_name = EXCLUDED.source_item_name,
                    status = EXCLUDED.status,
                    data_keys_count = EXCLUDED.data_keys_count,
                    fingerprint = EXCLUDED.fingerprint,
                    last_synced = EXCLUDED.last_synced,
                    last_error = EXCLUDED.last_error
                """,
                (
                    state.namespace,
                    state.secret_name,
                    state.source_item_id,
                    state.source_item_name,
                    str(state.status),
                    state.data_keys_count,
                    state.fingerprint,
                    state.last_synced,
                    state.last_error,
                ),
            )

    def mark_deleted(self, namespace: str, secret_name: str, reason: str) -> None:
        """Move a row to Deleted, creating it if the Secret was never tracked."""
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO secret_states (namespace, secret_name, status, last_error)
                VALUES (%s, %s, 'Deleted', %s)
                ON CONFLICT (namespace, secret_name) DO UPDATE SET
                    status = 'Deleted',
                    last_error = EXCLUDED.last_error,
                    last_synced = NOW()
                """,
                (namespace, secret_name, reason),
            )

    def list_active_not_in(self, namespace: str, names: set[str] | list[str]) -> list[SecretState]:
        """Active rows in ``namespace`` whose name is not in ``names``."""
        with get_connection() as conn:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            cur.execute(
                f"SELECT {_COLUMNS} FROM secret_states "
                "WHERE namespace = %s AND status = 'Active' "
                "AND NOT (secret_name = ANY(%s::text[])) "
                "ORDER BY secret_name",
                (namespace, sorted(names)),
            )
            rows = cur.fetchall()
        return [_row_to_state(r) for r in rows]

    def list_tracked_namespaces(self) -> set[str]:
        """Namespaces holding at least one Active row."""
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute("SELECT DISTINCT namespace FROM secret_states WHERE status = 'Active'")
            return {r[0] for r in cur.fetchall()}

    def append_sync_run(self, run: SyncRun) -> None:
        with get_connection() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO sync_runs
                    (id, trigger_kind, started_at, finished_at, status, items_fetched,
                     selective_item_id, dry_run, namespaces, orphans, errors)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb, %s::jsonb)
                """,
                (
                    run.id,
                    str(run.trigger),
                    run.started_at,
                    run.finished_at,
                    str(run.status),
                    run.items_fetched,
                    run.selective_item_id,
                    run.dry_run,
                    json.dumps(run.namespaces),
                    json.dumps(run.orphans),
                    json.dumps(run.errors),
                ),
            )

    # ─── Operator actions ────────────────────────────────────────────

    def list_states(self, namespace: str | None = None) -> list[SecretState]:
        with get_connection() as conn:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            if namespace:
                cur.execute(
                    f"SELECT {_COLUMNS} FROM secret_states WHERE namespace = %s "
                    "ORDER BY namespace, secret_name",
                    (namespace,),
                )
            else:
                cur.execute(f"SELECT {_COLUMNS} FROM secret_states ORDER BY namespace, secret_name")
            rows = cur.fetchall()
        return [_row_to_state(r) for r in rows]

    def list_runs(self, limit: int = 10) -> list[dict[str, Any]]:
        with get_connection() as conn:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            cur.execute(
                "SELECT id, trigger_kind, started_at, finished_at, status, items_fetched, "
                "selective_item_id, dry_run, errors FROM sync_runs "
                "ORDER BY started_at DESC LIMIT %s",
                (limit,),
            )
            return [dict(r) for r in cur.fetchall()]

    def purge(self, namespace: str, secret_name: str | None = None) -> int:
        """Hard-delete rows. Returns the number of rows removed."""
        with get_connection() as conn:
            cur = conn.cursor()
            if secret_name:
                cur.execute(
                    "DELETE FROM secret_states WHERE namespace = %s AND secret_name = %s",
                    (namespace, secret_name),
                )
            else:
                cur.execute("DELETE FROM secret_states WHERE namespace = %s", (namespace,))
            count = cur.rowcount
        logger.info("Purged %d state rows from %s", count, namespace)
        return count
