"""Tests for the State Store migration runner (connection mocked)."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from vaultkube.db import migrate


def _executed(cur) -> list[str]:
    return [c[0][0] for c in cur.execute.call_args_list]


def _all_columns() -> list[tuple[str, str]]:
    return [(t, c) for t, cols in migrate.REQUIRED_COLUMNS.items() for c in cols]


@pytest.fixture
def migrations(tmp_path):
    (tmp_path / "001_init.sql").write_text("CREATE TABLE a (id INT);")
    (tmp_path / "002b_more.sql").write_text("CREATE TABLE b (id INT);")
    (tmp_path / "README.txt").write_text("not a migration")
    (tmp_path / "scratch.sql").write_text("SELECT 1;")
    return tmp_path


@pytest.fixture
def migrate_db():
    with patch("vaultkube.db.migrate.get_connection") as mock_conn:
        conn = MagicMock()
        cur = MagicMock()
        conn.__enter__ = MagicMock(return_value=conn)
        conn.__exit__ = MagicMock(return_value=False)
        conn.cursor.return_value = cur
        cur.fetchall.return_value = []
        mock_conn.return_value = conn
        yield {"conn": conn, "cursor": cur}


class TestDiscover:
    def test_versioned_files_only(self, migrations):
        assert [v for v, _ in migrate._discover(migrations)] == ["001", "002b"]

    def test_shipped_migration_creates_required_tables(self):
        sql = migrate.MIGRATIONS_DIR.joinpath("001_secret_sync.sql").read_text()
        for table, columns in migrate.REQUIRED_COLUMNS.items():
            assert f"CREATE TABLE IF NOT EXISTS {table}" in sql
            for column in columns:
                assert column in sql


class TestApply:
    def test_applies_pending_in_order(self, migrations, migrate_db):
        assert migrate.apply(migrations_dir=migrations) == ["001", "002b"]
        executed = _executed(migrate_db["cursor"])
        assert executed.index("CREATE TABLE a (id INT);") < executed.index("CREATE TABLE b (id INT);")

    def test_holds_advisory_lock(self, migrations, migrate_db):
        migrate.apply(migrations_dir=migrations)
        executed = _executed(migrate_db["cursor"])
        assert executed[0] == "SELECT pg_advisory_lock(%s)"
        assert executed[-1] == "SELECT pg_advisory_unlock(%s)"

    def test_dry_run_executes_nothing(self, migrations, migrate_db):
        assert migrate.apply(dry_run=True, migrations_dir=migrations) == ["001", "002b"]
        assert not any(sql.startswith("CREATE TABLE a") for sql in _executed(migrate_db["cursor"]))

    def test_skips_applied(self, migrations, migrate_db):
        migrate_db["cursor"].fetchall.return_value = [
            {"version": "001", "filename": "001_init.sql", "applied_at": None, "checksum": None}
        ]
        assert migrate.apply(migrations_dir=migrations) == ["002b"]

    def test_failure_rolls_back_and_unlocks(self, migrations, migrate_db):
        def execute(sql, params=None):
            if sql.startswith("CREATE TABLE a"):
                raise RuntimeError("syntax error")

        migrate_db["cursor"].execute.side_effect = execute
        with pytest.raises(RuntimeError):
            migrate.apply(migrations_dir=migrations)
        migrate_db["conn"].rollback.assert_called_once()
        executed = _executed(migrate_db["cursor"])
        assert "CREATE TABLE b (id INT);" not in executed
        assert executed[-1] == "SELECT pg_advisory_unlock(%s)"


class TestStatus:
    def test_drift_detected(self, migrations, migrate_db):
        migrate_db["cursor"].fetchall.return_value = [
            {"version": "001", "filename": "001_init.sql", "applied_at": "2026-01-01", "checksum": "stale"}
        ]
        rows = {r["version"]: r["status"] for r in migrate.status(migrations)}
        assert rows == {"001": "DRIFT", "002b": "pending"}


class TestVerifySchema:
    def test_complete_schema(self, migrate_db):
        migrate_db["cursor"].fetchall.return_value = _all_columns()
        assert migrate.verify_schema() == []

    def test_missing_columns_reported(self, migrate_db):
        migrate_db["cursor"].fetchall.return_value = [
            col for col in _all_columns() if col != ("secret_states", "fingerprint")
        ]
        assert migrate.verify_schema() == ["secret_states.fingerprint"]

    def test_empty_database(self, migrate_db):
        missing = migrate.verify_schema()
        assert "sync_runs.id" in missing
        assert len(missing) == len(_all_columns())


class TestMain:
    def test_unknown_command(self, capsys):
        assert migrate.main(["bogus"]) == 1
        assert "Unknown command" in capsys.readouterr().err

    def test_apply_fails_on_incomplete_schema(self, capsys):
        with (
            patch.object(migrate, "apply", return_value=["001"]),
            patch.object(migrate, "verify_schema", return_value=["sync_runs.orphans"]),
        ):
            assert migrate.main(["apply"]) == 1
        assert "sync_runs.orphans" in capsys.readouterr().err

    def test_apply_dry_run_skips_schema_check(self, capsys):
        with (
            patch.object(migrate, "apply", return_value=["001"]) as apply,
            patch.object(migrate, "verify_schema") as verify,
        ):
            assert migrate.main(["apply", "--dry-run"]) == 0
        apply.assert_called_once_with(dry_run=True)
        verify.assert_not_called()
        assert "Would apply: 001" in capsys.readouterr().out

    def test_status_checks_schema_when_nothing_pending(self, capsys):
        rows = [{"version": "001", "filename": "001_secret_sync.sql", "status": "applied", "applied_at": None}]
        with (
            patch.object(migrate, "status", return_value=rows),
            patch.object(migrate, "verify_schema", return_value=[]),
        ):
            assert migrate.main(["status"]) == 0
        assert "schema OK" in capsys.readouterr().out
