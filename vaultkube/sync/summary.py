"""
Run summary — per-namespace counts and the overall status classification.

    FAILED      errors and nothing processed successfully
    PARTIAL     failures alongside successes
    SUCCESS     at least one create/update/delete, no failures
    UP-TO-DATE  nothing to do
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from vaultkube.sync.models import Action, Outcome, RunStatus, SyncRun, TriggerKind
from vaultkube.sync.orphans import OrphanReport


@dataclass
class NamespaceSummary:
    namespace: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    deleted: int = 0
    secrets: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def add(self, outcome: Outcome) -> None:
        if outcome.action == Action.CREATE:
            self.created += 1
        elif outcome.action == Action.UPDATE:
            self.updated += 1
        elif outcome.action == Action.SKIP:
            self.skipped += 1
        else:
            self.failed += 1
            self.errors.append(f"{outcome.name}: {outcome.error}")
        self.secrets.append(outcome.name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "deleted": self.deleted,
            "secrets": sorted(self.secrets),
            "errors": self.errors,
        }


@dataclass
class SyncSummary:
    trigger: TriggerKind
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    finished_at: datetime | None = None
    items_fetched: int = 0
    selective_item_id: str | None = None
    dry_run: bool = False
    namespaces: dict[str, NamespaceSummary] = field(default_factory=dict)
    orphans: OrphanReport | None = None
    errors: list[str] = field(default_factory=list)

    def namespace(self, name: str) -> NamespaceSummary:
        if name not in self.namespaces:
            self.namespaces[name] = NamespaceSummary(name)
        return self.namespaces[name]

    def record(self, outcome: Outcome) -> None:
        self.namespace(outcome.namespace).add(outcome)

    def record_orphans(self, report: OrphanReport) -> None:
        self.orphans = report
        for ns, names in report.deleted.items():
            self.namespace(ns).deleted += len(names)
        self.errors.extend(report.errors)

    def _total(self, attr: str) -> int:
        return sum(getattr(ns, attr) for ns in self.namespaces.values())

    @property
    def created(self) -> int:
        return self._total("created")

    @property
    def updated(self) -> int:
        return self._total("updated")

    @property
    def skipped(self) -> int:
        return self._total("skipped")

    @property
    def failed(self) -> int:
        return self._total("failed")

    @property
    def deleted(self) -> int:
        return self._total("deleted")

    @property
    def succeeded(self) -> int:
        return self.created + self.updated + self.skipped + self.deleted

    @property
    def status(self) -> RunStatus:
        failures = self.failed + len(self.errors)
        if failures and self.succeeded == 0:
            return RunStatus.FAILED
        if failures:
            return RunStatus.PARTIAL
        if self.created + self.updated + self.deleted:
            return RunStatus.SUCCESS
        return RunStatus.UP_TO_DATE

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.now(UTC)
        return (end - self.started_at).total_seconds()

    def finish(self) -> None:
        self.finished_at = datetime.now(UTC)

    def all_errors(self) -> list[str]:
        """Run-level errors followed by per-secret errors, verbatim."""
        errors = list(self.errors)
        for ns in sorted(self.namespaces):
            errors.extend(f"{ns}/{e}" for e in self.namespaces[ns].errors)
        return errors

    def to_sync_run(self) -> SyncRun:
        return SyncRun(
            trigger=self.trigger,
            started_at=self.started_at,
            finished_at=self.finished_at or datetime.now(UTC),
            status=self.status,
            items_fetched=self.items_fetched,
            namespaces={ns: s.to_dict() for ns, s in sorted(self.namespaces.items())},
            orphans=self.orphans.to_dict() if self.orphans else {},
            errors=self.all_errors(),
            selective_item_id=self.selective_item_id,
            dry_run=self.dry_run,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": str(self.trigger),
            "status": str(self.status),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "items_fetched": self.items_fetched,
            "selective_item_id": self.selective_item_id,
            "dry_run": self.dry_run,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "deleted": self.deleted,
            "namespaces": {ns: s.to_dict() for ns, s in sorted(self.namespaces.items())},
            "orphans": self.orphans.to_dict() if self.orphans else None,
            "errors": self.all_errors(),
        }
