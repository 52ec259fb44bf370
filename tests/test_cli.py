"""Tests for vaultkube.cli — command line interface."""

from unittest.mock import MagicMock, patch

from vaultkube.cli import main
from vaultkube.sync.models import Action, Outcome, RunStatus, TriggerKind
from vaultkube.sync.summary import SyncSummary


def _summary(*outcomes, errors=()):
    s = SyncSummary(TriggerKind.MANUAL)
    for o in outcomes:
        s.record(o)
    s.errors.extend(errors)
    s.finish()
    return s


class TestCli:
    def test_version(self, capsys):
        rc = main(["version"])
        assert rc == 0
        out = capsys.readouterr().out
        assert "vaultkube" in out
        assert "0.1.0" in out

    def test_version_flag(self, capsys):
        rc = main(["--version"])
        assert rc == 0
        assert "vaultkube" in capsys.readouterr().out

    def test_no_args(self, capsys):
        rc = main([])
        assert rc == 0
        assert "usage" in capsys.readouterr().out.lower()


class TestSyncCommand:
    def test_full_sync(self, capsys):
        coordinator = MagicMock()
        coordinator.run_full.return_value = _summary(Outcome("prod", "db", Action.CREATE))
        with (
            patch("vaultkube.sync.daemon.build_coordinator", return_value=coordinator),
            patch("vaultkube.sync.daemon.configure_logging"),
        ):
            rc = main(["sync"])
        assert rc == 0
        coordinator.run_full.assert_called_once_with(TriggerKind.MANUAL)
        out = capsys.readouterr().out
        assert "Status: SUCCESS" in out
        assert "created=1" in out

    def test_selective_sync(self):
        coordinator = MagicMock()
        coordinator.run_selective.return_value = _summary()
        with (
            patch("vaultkube.sync.daemon.build_coordinator", return_value=coordinator),
            patch("vaultkube.sync.daemon.configure_logging"),
        ):
            rc = main(["sync", "--item", "abc", "--namespace", "prod"])
        assert rc == 0
        coordinator.run_selective.assert_called_once_with(
            "abc", ["prod"], trigger=TriggerKind.MANUAL
        )

    def test_dry_run_flag_reaches_config(self):
        coordinator = MagicMock()
        coordinator.run_full.return_value = _summary()
        with (
            patch("vaultkube.sync.daemon.build_coordinator", return_value=coordinator) as build,
            patch("vaultkube.sync.daemon.configure_logging"),
        ):
            main(["sync", "--dry-run"])
        assert build.call_args[0][0].sync.dry_run is True

    def test_failed_run_exit_code(self, capsys):
        coordinator = MagicMock()
        coordinator.run_full.return_value = _summary(errors=["Fetch failed: not logged in"])
        with (
            patch("vaultkube.sync.daemon.build_coordinator", return_value=coordinator),
            patch("vaultkube.sync.daemon.configure_logging"),
        ):
            rc = main(["sync"])
        assert rc == 1
        assert "ERROR Fetch failed" in capsys.readouterr().out

    def test_busy_exit_code(self, capsys):
        coordinator = MagicMock()
        coordinator.run_full.return_value = None
        with (
            patch("vaultkube.sync.daemon.build_coordinator", return_value=coordinator),
            patch("vaultkube.sync.daemon.configure_logging"),
        ):
            rc = main(["sync"])
        assert rc == 2
        assert "already in progress" in capsys.readouterr().out

    def test_json_output(self, capsys):
        import json

        coordinator = MagicMock()
        coordinator.run_full.return_value = _summary(Outcome("prod", "db", Action.SKIP))
        with (
            patch("vaultkube.sync.daemon.build_coordinator", return_value=coordinator),
            patch("vaultkube.sync.daemon.configure_logging"),
        ):
            main(["sync", "--json"])
        data = json.loads(capsys.readouterr().out)
        assert data["status"] == str(RunStatus.UP_TO_DATE)


class TestStoreCommands:
    def test_purge(self, capsys):
        with patch("vaultkube.sync.store.StateStore.purge", return_value=2) as purge:
            rc = main(["purge", "prod", "db"])
        assert rc == 0
        purge.assert_called_once_with("prod", "db")
        assert "Purged 2" in capsys.readouterr().out

    def test_status_db_unreachable(self, capsys):
        with patch(
            "vaultkube.sync.store.StateStore.list_states",
            side_effect=ConnectionError("Cannot connect to PostgreSQL"),
        ):
            rc = main(["status"])
        assert rc == 1
        assert "Cannot connect" in capsys.readouterr().err

    def test_migrate_status(self):
        with patch("vaultkube.db.migrate.main", return_value=0) as migrate_main:
            rc = main(["migrate", "--status"])
        assert rc == 0
        migrate_main.assert_called_once_with(["status"])
