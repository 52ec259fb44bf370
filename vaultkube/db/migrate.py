"""
State Store schema migrations.

Applies ``vaultkube/db/migrations/NNN_*.sql`` in order and records each in
``schema_migrations`` with a SHA-256 of the file, so an edited migration
shows up as DRIFT. During a rolling deployment several replicas may start
``vaultkube migrate`` at once; a session advisory lock makes them apply one
after another.

After migrating, the live schema is checked against the columns the State
Store reads and writes. A missing column is reported instead of surfacing
later as a failed reconciliation.

Usage:
    vaultkube migrate [--status] [--dry-run]
    python -m vaultkube.db.migrate [status|apply [--dry-run]]
"""

from __future__ import annotations

import hashlib
import logging
import re
import sys
from pathlib import Path

from psycopg2.extras import RealDictCursor

from vaultkube.db.connection import get_connection

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

# 001_name.sql, 002b_name.sql, ...
_MIGRATION_RE = re.compile(r"^(\d+[a-z]?)_.+\.sql$")

# pg_advisory_lock key shared by every vaultkube replica
ADVISORY_LOCK_KEY = 0x5641554C544B  # "VAULTK"

REQUIRED_COLUMNS: dict[str, tuple[str, ...]] = {
    "secret_states": (
        "namespace",
        "secret_name",
        "source_item_id",
        "source_item_name",
        "status",
        "data_keys_count",
        "fingerprint",
        "last_synced",
        "created_at",
        "last_error",
    ),
    "sync_runs": (
        "id",
        "trigger_kind",
        "started_at",
        "finished_at",
        "status",
        "items_fetched",
        "selective_item_id",
        "dry_run",
        "namespaces",
        "orphans",
        "errors",
    ),
}


def _discover(migrations_dir: Path | None = None) -> list[tuple[str, Path]]:
    found: list[tuple[str, Path]] = []
    for path in sorted((migrations_dir or MIGRATIONS_DIR).glob("*.sql")):
        m = _MIGRATION_RE.match(path.name)
        if m:
            found.append((m.group(1), path))
    return found


def _checksum(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def _applied(conn) -> dict[str, dict]:
    cur = conn.cursor(cursor_factory=RealDictCursor)
    cur.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version     TEXT PRIMARY KEY,
            filename    TEXT NOT NULL,
            applied_at  TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            checksum    TEXT
        )
    """)
    cur.execute("SELECT version, filename, applied_at, checksum FROM schema_migrations ORDER BY version")
    return {r["version"]: dict(r) for r in cur.fetchall()}


def status(migrations_dir: Path | None = None) -> list[dict]:
    """One row per migration file: version, filename, status, applied_at.

    status is ``applied``, ``pending``, or ``DRIFT`` when the file changed
    after it was applied.
    """
    files = _discover(migrations_dir)
    with get_connection() as conn:
        applied = _applied(conn)

    rows: list[dict] = []
    for version, path in files:
        row = applied.get(version)
        if row is None:
            state = "pending"
        elif row.get("checksum") and row["checksum"] != _checksum(path):
            state = "DRIFT"
        else:
            state = "applied"
        rows.append({
            "version": version,
            "filename": path.name,
            "status": state,
            "applied_at": row["applied_at"] if row else None,
        })
    return rows


def apply(dry_run: bool = False, migrations_dir: Path | None = None) -> list[str]:
    """Apply every pending migration, each in its own transaction.

    Returns the versions applied (or that would be, with ``dry_run``).
    """
    files = _discover(migrations_dir)

    with get_connection() as conn:
        cur = conn.cursor()
        cur.execute("SELECT pg_advisory_lock(%s)", (ADVISORY_LOCK_KEY,))
        try:
            applied = _applied(conn)
            conn.commit()
            pending = [(v, path) for v, path in files if v not in applied]
            if not pending:
                logger.info("State Store schema is up to date")
                return []

            done: list[str] = []
            for version, path in pending:
                if dry_run:
                    logger.info("[dry-run] would apply %s", path.name)
                    done.append(version)
                    continue
                try:
                    cur.execute(path.read_text())
                    cur.execute(
                        "INSERT INTO schema_migrations (version, filename, checksum) VALUES (%s, %s, %s) "
                        "ON CONFLICT (version) DO NOTHING",
                        (version, path.name, _checksum(path)),
                    )
                    conn.commit()
                except Exception:
                    conn.rollback()
                    logger.error("Migration %s failed; later migrations not applied", path.name)
                    raise
                logger.info("Applied %s", path.name)
                done.append(version)
            return done
        finally:
            cur.execute("SELECT pg_advisory_unlock(%s)", (ADVISORY_LOCK_KEY,))


def verify_schema() -> list[str]:
    """``table.column`` for every column the State Store needs but the database lacks."""
    with get_connection() as conn:
        cur = conn.cursor()
        cur.execute(
            "SELECT table_name, column_name FROM information_schema.columns "
            "WHERE table_schema = current_schema() AND table_name = ANY(%s)",
            (list(REQUIRED_COLUMNS),),
        )
        present = {(row[0], row[1]) for row in cur.fetchall()}
    return [
        f"{table}.{column}"
        for table, columns in REQUIRED_COLUMNS.items()
        for column in columns
        if (table, column) not in present
    ]


def _report_schema() -> int:
    missing = verify_schema()
    if missing:
        print(f"State Store schema incomplete, missing: {', '.join(missing)}", file=sys.stderr)
        return 1
    print("State Store schema OK")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    logging.basicConfig(level=logging.INFO, format="%(message)s")
    command = args[0] if args else "status"

    if command == "status":
        rows = status()
        print(f"{'Version':<10} {'Filename':<40} {'Status':<10} {'Applied At'}")
        print("-" * 85)
        for r in rows:
            at = str(r["applied_at"])[:19] if r["applied_at"] else ""
            print(f"{r['version']:<10} {r['filename']:<40} {r['status']:<10} {at}")
        if any(r["status"] == "pending" for r in rows):
            return 0
        return _report_schema()

    if command == "apply":
        dry_run = "--dry-run" in args[1:]
        versions = apply(dry_run=dry_run)
        if dry_run:
            print(f"Would apply: {', '.join(versions) or 'nothing'}")
            return 0
        print(f"Applied: {', '.join(versions) or 'nothing'}")
        return _report_schema()

    print(f"Unknown command: {command}", file=sys.stderr)
    print("Usage: python -m vaultkube.db.migrate [status|apply [--dry-run]]", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
