"""
Test fixtures for the reconciliation engine.

- In-memory State Store and cluster doubles with the production interfaces
- A fetcher double that serves a fixed item list
- ``make_item`` factory for vault items in the ``bw list items`` shape
"""

from __future__ import annotations

import base64
from pathlib import Path
from typing import Any

import pytest

from vaultkube.config import Config, KubernetesConfig, SyncConfig
from vaultkube.sync.applier import build_body
from vaultkube.sync.builder import OWNER_LABEL
from vaultkube.sync.errors import SyncError
from vaultkube.sync.models import (
    DesiredSecret,
    LiveSecret,
    SecretState,
    SecretStatus,
    SyncRun,
    VaultItem,
)


class MemoryStore:
    """StateStore double keyed by (namespace, secret_name)."""

    def __init__(self) -> None:
        self.states: dict[tuple[str, str], SecretState] = {}
        self.runs: list[SyncRun] = []
        self.writes = 0

    def get(self, namespace: str, secret_name: str) -> SecretState | None:
        return self.states.get((namespace, secret_name))

    def upsert(self, state: SecretState) -> None:
        self.writes += 1
        self.states[(state.namespace, state.secret_name)] = state

    def mark_deleted(self, namespace: str, secret_name: str, reason: str) -> None:
        self.writes += 1
        state = self.states.get((namespace, secret_name)) or SecretState(
            namespace, secret_name, SecretStatus.DELETED
        )
        state.status = SecretStatus.DELETED
        state.last_error = reason
        self.states[(namespace, secret_name)] = state

    def list_active_not_in(self, namespace: str, names) -> list[SecretState]:
        return [
            s
            for (ns, name), s in sorted(self.states.items())
            if ns == namespace and s.status == SecretStatus.ACTIVE and name not in names
        ]

    def list_tracked_namespaces(self) -> set[str]:
        return {ns for (ns, _), s in self.states.items() if s.status == SecretStatus.ACTIVE}

    def append_sync_run(self, run: SyncRun) -> None:
        self.runs.append(run)


class FakeCluster:
    """ClusterApplier double. Merges through the real ``build_body``."""

    def __init__(self, managed_by: str = "vaultkube") -> None:
        self.managed_by = managed_by
        self.secrets: dict[tuple[str, str], LiveSecret] = {}
        self.calls: list[tuple[str, str, str]] = []
        self.errors: dict[tuple[str, str], SyncError] = {}

    def add(self, namespace: str, name: str, data: dict[str, bytes], *, owned: bool = True) -> LiveSecret:
        labels = {OWNER_LABEL: self.managed_by} if owned else {}
        live = LiveSecret(namespace, name, dict(data), labels, {}, "1")
        self.secrets[(namespace, name)] = live
        return live

    def _store(self, secret: DesiredSecret) -> None:
        live = self.secrets.get(secret.key)
        body = build_body(secret, live)
        self.secrets[secret.key] = LiveSecret(
            namespace=secret.namespace,
            name=secret.name,
            data={k: base64.b64decode(v) for k, v in body.data.items()},
            labels=dict(body.metadata.labels),
            annotations=dict(body.metadata.annotations),
            resource_version=str(int(live.resource_version or 0) + 1) if live else "1",
        )

    def _check(self, namespace: str, name: str) -> None:
        if (namespace, name) in self.errors:
            raise self.errors[(namespace, name)]

    def read(self, namespace: str, name: str) -> LiveSecret | None:
        self._check(namespace, name)
        return self.secrets.get((namespace, name))

    def create(self, secret: DesiredSecret) -> None:
        self._check(*secret.key)
        self.calls.append(("create", secret.namespace, secret.name))
        self._store(secret)

    def patch(self, secret: DesiredSecret) -> None:
        self._check(*secret.key)
        self.calls.append(("patch", secret.namespace, secret.name))
        self._store(secret)

    def delete(self, namespace: str, name: str) -> None:
        self.calls.append(("delete", namespace, name))
        self.secrets.pop((namespace, name), None)

    def list_owned(self, namespace: str) -> list[str]:
        self.calls.append(("list", namespace, ""))
        return sorted(
            name
            for (ns, name), s in self.secrets.items()
            if ns == namespace and s.labels.get(OWNER_LABEL) == self.managed_by
        )

    @property
    def writes(self) -> list[tuple[str, str, str]]:
        return [c for c in self.calls if c[0] in ("create", "patch", "delete")]


class FakeFetcher:
    def __init__(self, items: list[VaultItem] | None = None, error: Exception | None = None) -> None:
        self.items = items or []
        self.error = error
        self.calls = 0

    def fetch(self) -> list[VaultItem]:
        self.calls += 1
        if self.error:
            raise self.error
        return list(self.items)


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config with a temp lock file and no retry backoff."""
    return Config(
        kubernetes=KubernetesConfig(backoff_base=0, backoff_max=0),
        sync=SyncConfig(lock_path=tmp_path / "sync.lock"),
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def make_item():
    """Factory for VaultItem in the bw JSON shape."""

    def _make(
        item_id: str = "item-1",
        name: str = "db-creds",
        *,
        namespaces: str | None = "default",
        username: str = "admin",
        password: str = "s3cret",
        fields: dict[str, str] | None = None,
        notes: str = "",
        item_type: int = 1,
        **extra: Any,
    ) -> VaultItem:
        raw_fields = []
        if namespaces is not None:
            raw_fields.append({"name": "namespaces", "value": namespaces, "type": 0})
        for k, v in (fields or {}).items():
            raw_fields.append({"name": k, "value": v, "type": 0})
        raw: dict[str, Any] = {
            "id": item_id,
            "name": name,
            "type": item_type,
            "notes": notes,
            "fields": raw_fields,
        }
        if item_type == 1:
            raw["login"] = {"username": username, "password": password, "uris": []}
        raw.update(extra)
        return VaultItem.from_dict(raw)

    return _make
