"""Tests for orphan collection."""

from __future__ import annotations

from vaultkube.sync.errors import TransientClusterError
from vaultkube.sync.models import SecretState, SecretStatus
from vaultkube.sync.orphans import ORPHAN_REASON, collect_orphans


def _track(store, ns, name, status=SecretStatus.ACTIVE):
    store.upsert(SecretState(ns, name, status, source_item_id="item"))


class TestCollectOrphans:
    def test_owned_unwanted_secret_deleted(self, cluster, store):
        cluster.add("team-a", "api-key", {"k": b"v"})
        cluster.add("team-a", "db-pass", {"k": b"v"})
        _track(store, "team-a", "api-key")
        _track(store, "team-a", "db-pass")

        report = collect_orphans({"team-a": {"db-pass"}}, cluster, store, delete=True)

        assert report.found == {"team-a": ["api-key"]}
        assert report.deleted == {"team-a": ["api-key"]}
        assert ("team-a", "api-key") not in cluster.secrets
        state = store.get("team-a", "api-key")
        assert state.status == SecretStatus.DELETED
        assert state.last_error == ORPHAN_REASON

    def test_unowned_secret_never_deleted(self, cluster, store):
        cluster.add("default", "hand-made", {"k": b"v"}, owned=False)
        report = collect_orphans({"default": set()}, cluster, store, delete=True)
        assert report.total_found == 0
        assert ("default", "hand-made") in cluster.secrets

    def test_tracked_namespace_visited_when_nothing_wanted(self, cluster, store):
        cluster.add("old-ns", "leftover", {"k": b"v"})
        _track(store, "old-ns", "leftover")
        report = collect_orphans({}, cluster, store, delete=True)
        assert report.deleted == {"old-ns": ["leftover"]}

    def test_untracked_namespace_not_visited(self, cluster, store):
        cluster.add("elsewhere", "owned-but-unknown", {"k": b"v"})
        collect_orphans({"default": set()}, cluster, store, delete=True)
        assert ("list", "elsewhere", "") not in cluster.calls
        assert ("elsewhere", "owned-but-unknown") in cluster.secrets

    def test_tracked_but_already_gone_marked_deleted(self, cluster, store):
        _track(store, "default", "vanished")
        report = collect_orphans({"default": set()}, cluster, store, delete=True)
        assert report.deleted == {"default": ["vanished"]}
        assert cluster.writes == []
        assert store.get("default", "vanished").status == SecretStatus.DELETED

    def test_disabled_only_reports(self, cluster, store):
        cluster.add("default", "stale", {"k": b"v"})
        report = collect_orphans({"default": set()}, cluster, store, delete=False)
        assert report.found == {"default": ["stale"]}
        assert report.deleted == {}
        assert ("default", "stale") in cluster.secrets

    def test_dry_run_only_reports(self, cluster, store):
        cluster.add("default", "stale", {"k": b"v"})
        _track(store, "default", "stale")
        writes = store.writes
        report = collect_orphans({"default": set()}, cluster, store, delete=True, dry_run=True)
        assert report.total_found == 1
        assert cluster.writes == []
        assert store.writes == writes

    def test_protected_names_kept(self, cluster, store):
        cluster.add("default", "vaultkube-token", {"k": b"v"})
        report = collect_orphans(
            {"default": set()}, cluster, store, delete=True, protected=("vaultkube-token",)
        )
        assert report.total_found == 0

    def test_list_error_recorded_and_other_namespaces_continue(self, cluster, store, monkeypatch):
        cluster.add("b", "stale", {"k": b"v"})
        real_list = cluster.list_owned

        def flaky(ns):
            if ns == "a":
                raise TransientClusterError("list secrets in a: 503 unavailable", 503)
            return real_list(ns)

        monkeypatch.setattr(cluster, "list_owned", flaky)
        report = collect_orphans({"a": set(), "b": set()}, cluster, store, delete=True)
        assert not report.success
        assert "503 unavailable" in report.errors[0]
        assert report.deleted == {"b": ["stale"]}

    def test_to_dict(self, cluster, store):
        cluster.add("default", "stale", {"k": b"v"})
        d = collect_orphans({"default": set()}, cluster, store, delete=True).to_dict()
        assert d["total_found"] == 1
        assert d["total_deleted"] == 1
        assert d["success"] is True
