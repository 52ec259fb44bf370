"""
Sync Coordinator — one reconciliation at a time, full or selective.

Per run: idle -> acquiring -> running -> finalizing -> idle.

Acquiring fails fast when another run (thread or process) holds the global
lock; the caller gets None and nothing is written, not even ``phase``, which
only the lock holder updates. Running fetches items,
builds the desired set (filtered for selective runs), reconciles each Secret,
retires renamed Secrets and, on full runs, collects orphans. Finalizing
always writes the SyncRun row, publishes the summary and releases the lock,
whatever happened while running.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Protocol

from vaultkube.config import Config
from vaultkube.sync.applier import ClusterApplier
from vaultkube.sync.builder import build_desired
from vaultkube.sync.errors import FetchError, SyncError
from vaultkube.sync.events import WebhookEvent
from vaultkube.sync.lock import GlobalSyncLock
from vaultkube.sync.models import RunPhase, TriggerKind, VaultItem
from vaultkube.sync.orphans import collect_orphans
from vaultkube.sync.publish import publish_summary
from vaultkube.sync.reconciler import Reconciler
from vaultkube.sync.store import StateStore
from vaultkube.sync.summary import SyncSummary

logger = logging.getLogger(__name__)


class ItemFetcher(Protocol):
    def fetch(self) -> list[VaultItem]: ...


@dataclass(frozen=True)
class Scope:
    """Selective-sync filter: one item, plus any namespaces the event names."""

    item_id: str
    namespaces: tuple[str, ...] = ()

    def matches(self, namespace: str, item_id: str) -> bool:
        return item_id == self.item_id or namespace in self.namespaces


class SyncCoordinator:
    """Owns the global lock and drives the reconciliation pipeline."""

    def __init__(
        self,
        config: Config,
        fetcher: ItemFetcher,
        applier: ClusterApplier,
        store: StateStore,
        lock: GlobalSyncLock | None = None,
    ) -> None:
        self.config = config
        self.fetcher = fetcher
        self.applier = applier
        self.store = store
        self.lock = lock or GlobalSyncLock(config.sync.lock_path)
        self.phase = RunPhase.IDLE
        self.last_summary: SyncSummary | None = None
        self._cancel = threading.Event()

    # ─── Triggers ────────────────────────────────────────────────────

    def run_full(self, trigger: TriggerKind = TriggerKind.MANUAL) -> SyncSummary | None:
        """Reconcile everything. None if another run is in progress."""
        return self._run(trigger, None)

    def run_selective(
        self,
        item_id: str,
        namespaces: tuple[str, ...] | list[str] = (),
        trigger: TriggerKind = TriggerKind.WEBHOOK,
    ) -> SyncSummary | None:
        """Reconcile only Secrets derived from ``item_id`` or in ``namespaces``."""
        return self._run(trigger, Scope(item_id, tuple(namespaces)))

    def handle_event(self, event: WebhookEvent) -> SyncSummary | None:
        if event.requires_full_sync:
            logger.info("Event %s for item %s: running full sync", event.event_type, event.item_id)
            return self.run_full(TriggerKind.WEBHOOK)
        logger.info("Event %s for item %s: running selective sync", event.event_type, event.item_id)
        return self.run_selective(event.item_id, event.namespaces)

    def cancel(self) -> None:
        """Stop the current run between Secrets. Sticky until the process exits."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ─── Run ─────────────────────────────────────────────────────────

    def _run(self, trigger: TriggerKind, scope: Scope | None) -> SyncSummary | None:
        # phase belongs to the lock holder; a losing trigger never touches it
        with self.lock.hold() as acquired:
            if not acquired:
                logger.info("Sync already in progress; skipping %s trigger", trigger)
                return None

            self.phase = RunPhase.ACQUIRING
            summary = SyncSummary(
                trigger=trigger,
                selective_item_id=scope.item_id if scope else None,
                dry_run=self.config.sync.dry_run,
            )
            try:
                self.phase = RunPhase.RUNNING
                self._execute(summary, scope)
            except FetchError as e:
                summary.errors.append(f"Fetch failed: {e}")
                logger.error("Vault fetch failed, aborting run: %s", e)
            except Exception as e:
                summary.errors.append(f"Run aborted: {e}")
                logger.exception("Sync run aborted")
                raise
            finally:
                self.phase = RunPhase.FINALIZING
                self._finalize(summary)
                self.phase = RunPhase.IDLE
        return summary

    def _execute(self, summary: SyncSummary, scope: Scope | None) -> None:
        items = self.fetcher.fetch()
        summary.items_fetched = len(items)

        if scope is not None and not any(i.id == scope.item_id for i in items):
            logger.info("Item %s not found in vault; escalating to full sync", scope.item_id)
            scope = None
            summary.selective_item_id = None

        result = build_desired(items, self.config)
        secrets = result.secrets
        failures = result.failures
        renamed = result.renamed
        if scope is not None:
            secrets = [s for s in secrets if scope.matches(s.namespace, s.source_item_id)]
            failures = [f for f in failures if scope.matches(f.namespace, f.source_item_id)]
            renamed = [r for r in renamed if scope.matches(r[0], r[2])]
            logger.info(
                "Selective sync for item %s: %d secrets in scope", scope.item_id, len(secrets)
            )

        reconciler = Reconciler(self.applier, self.store, dry_run=self.config.sync.dry_run)

        for failure in failures:
            summary.record(reconciler.fail(failure))

        for secret in secrets:
            if self.cancelled:
                summary.errors.append("Run cancelled")
                logger.warning("Run cancelled; %d secrets not processed", len(secrets))
                return
            summary.record(reconciler.reconcile(secret))

        desired_keys = {s.key for s in result.secrets}
        for ns, old_name, item_id in renamed:
            if (ns, old_name) in desired_keys:
                continue
            try:
                if reconciler.retire_renamed(ns, old_name, item_id):
                    summary.namespace(ns).deleted += 1
            except SyncError as e:
                summary.errors.append(f"Deleting renamed secret {ns}/{old_name}: {e}")
                logger.error("Failed to delete renamed secret %s/%s: %s", ns, old_name, e)

        if scope is None:
            wanted: dict[str, set[str]] = {}
            for key in desired_keys | {f.key for f in result.failures}:
                wanted.setdefault(key[0], set()).add(key[1])
            report = collect_orphans(
                wanted,
                self.applier,
                self.store,
                delete=self.config.sync.delete_orphans,
                dry_run=self.config.sync.dry_run,
                protected=self.config.sync.protected_secrets,
            )
            summary.record_orphans(report)

    def _finalize(self, summary: SyncSummary) -> None:
        summary.finish()
        self.last_summary = summary
        try:
            self.store.append_sync_run(summary.to_sync_run())
        except Exception as e:
            logger.error("Failed to record sync run: %s", e)
        publish_summary(summary.to_dict(), self.config.redis)
        logger.info(
            "Sync %s (%s%s): created=%d updated=%d skipped=%d failed=%d deleted=%d in %.1fs",
            summary.status,
            summary.trigger,
            ", dry-run" if summary.dry_run else "",
            summary.created,
            summary.updated,
            summary.skipped,
            summary.failed,
            summary.deleted,
            summary.duration_seconds,
        )
