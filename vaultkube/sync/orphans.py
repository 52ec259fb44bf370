"""
Orphan Collector — removes engine-owned Secrets nothing in the vault wants.

Only namespaces with a desired Secret or Active tracked state are visited,
and only Secrets carrying the ownership label are listed there. Secrets that
failed to build this run count as wanted so a half-edited vault item does
not get its Secret deleted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from vaultkube.sync.applier import ClusterApplier
from vaultkube.sync.errors import SyncError
from vaultkube.sync.store import StateStore

logger = logging.getLogger(__name__)

ORPHAN_REASON = "Secret removed - no longer exists in vault"


@dataclass
class OrphanReport:
    enabled: bool
    found: dict[str, list[str]] = field(default_factory=dict)
    deleted: dict[str, list[str]] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def total_found(self) -> int:
        return sum(len(v) for v in self.found.values())

    @property
    def total_deleted(self) -> int:
        return sum(len(v) for v in self.deleted.values())

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "success": self.success,
            "total_found": self.total_found,
            "total_deleted": self.total_deleted,
            "found": self.found,
            "deleted": self.deleted,
            "errors": self.errors,
        }


def collect_orphans(
    wanted: dict[str, set[str]],
    applier: ClusterApplier,
    store: StateStore,
    *,
    delete: bool,
    dry_run: bool = False,
    protected: tuple[str, ...] = (),
) -> OrphanReport:
    """Find and (optionally) delete orphans.

    ``wanted`` maps namespace -> Secret names produced or attempted this run.
    """
    report = OrphanReport(enabled=delete)
    namespaces = set(wanted) | store.list_tracked_namespaces()

    for ns in sorted(namespaces):
        keep = wanted.get(ns, set()) | set(protected)
        try:
            live = set(applier.list_owned(ns))
        except SyncError as e:
            report.errors.append(f"Listing secrets in {ns}: {e}")
            logger.error("Orphan scan of %s failed: %s", ns, e)
            continue
        tracked = {s.secret_name for s in store.list_active_not_in(ns, keep)}
        orphans = sorted((live - keep) | tracked)
        if not orphans:
            continue

        report.found[ns] = orphans
        if not delete or dry_run:
            logger.info(
                "%s %d orphan(s) in %s: %s",
                "[dry-run] Would delete" if delete else "Found (cleanup disabled)",
                len(orphans),
                ns,
                ", ".join(orphans),
            )
            continue

        for name in orphans:
            try:
                if name in live:
                    applier.delete(ns, name)
                store.mark_deleted(ns, name, ORPHAN_REASON)
            except SyncError as e:
                report.errors.append(f"Deleting orphan {ns}/{name}: {e}")
                logger.error("Failed to delete orphan %s/%s: %s", ns, name, e)
                continue
            report.deleted.setdefault(ns, []).append(name)
            logger.info("Deleted orphan secret %s/%s", ns, name)

    return report
