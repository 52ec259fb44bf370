"""
Differ/Reconciler — decides and applies one action per desired Secret.

Decision table (``live`` is what the cluster holds now):

    no live, prior state Active           -> UPDATE (recreate)
    no live, otherwise                    -> CREATE
    live equivalent, fingerprint agrees   -> SKIP (state row repaired)
    anything else                         -> UPDATE (content / metadata)
    any SyncError on the way              -> FAIL (error kept verbatim)

"Fingerprint agrees" means no prior state, or the stored fingerprint or the
live fingerprint annotation equals the desired one. The live annotation
check is what heals a crash between apply and the state write.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from vaultkube.sync.applier import ClusterApplier, managed_keys
from vaultkube.sync.builder import FINGERPRINT_ANNOTATION
from vaultkube.sync.errors import SyncError
from vaultkube.sync.models import (
    Action,
    BuildFailure,
    DesiredSecret,
    LiveSecret,
    Outcome,
    SecretState,
    SecretStatus,
)
from vaultkube.sync.store import StateStore

logger = logging.getLogger(__name__)

RENAMED_REASON = "Secret renamed - superseded by secret-name override"


def payload_matches(desired: DesiredSecret, live: LiveSecret) -> bool:
    """Every desired key is present with identical bytes and no stale managed keys remain."""
    if any(live.data.get(k) != v for k, v in desired.data.items()):
        return False
    return managed_keys(live) == set(desired.data)


def metadata_matches(desired: DesiredSecret, live: LiveSecret) -> bool:
    return all(live.labels.get(k) == v for k, v in desired.labels.items()) and all(
        live.annotations.get(k) == v for k, v in desired.annotations.items()
    )


def decide(
    desired: DesiredSecret, state: SecretState | None, live: LiveSecret | None
) -> tuple[Action, str]:
    """Pure decision table. Returns (action, change reason)."""
    if live is None:
        if state is not None and state.status == SecretStatus.ACTIVE:
            return Action.UPDATE, "recreate"
        return Action.CREATE, "initial"

    content_ok = payload_matches(desired, live)
    meta_ok = metadata_matches(desired, live)
    fp = desired.fingerprint
    fingerprint_ok = (
        state is None
        or state.fingerprint == fp
        or live.annotations.get(FINGERPRINT_ANNOTATION) == fp
    )
    if content_ok and meta_ok and fingerprint_ok:
        return Action.SKIP, ""

    reasons = []
    if not content_ok:
        reasons.append("content")
    if not meta_ok:
        reasons.append("metadata")
    return Action.UPDATE, "+".join(reasons) or "fingerprint"


class Reconciler:
    """Applies the decision table against the cluster and records state."""

    def __init__(self, applier: ClusterApplier, store: StateStore, *, dry_run: bool = False) -> None:
        self.applier = applier
        self.store = store
        self.dry_run = dry_run

    def reconcile(self, desired: DesiredSecret) -> Outcome:
        ns, name = desired.key
        state: SecretState | None = self.store.get(ns, name)
        try:
            live = self.applier.read(ns, name)
            action, reason = decide(desired, state, live)
            if self.dry_run:
                logger.info("[dry-run] %s %s/%s %s", action, ns, name, reason)
            elif action == Action.CREATE:
                self.applier.create(desired)
            elif action == Action.UPDATE:
                self.applier.patch(desired)
        except SyncError as e:
            return self._record_failure(ns, name, str(e), desired.source_item_id, desired.source_item_name, state)

        if not self.dry_run:
            self.store.upsert(
                SecretState(
                    namespace=ns,
                    secret_name=name,
                    status=SecretStatus.ACTIVE,
                    source_item_id=desired.source_item_id,
                    source_item_name=desired.source_item_name,
                    data_keys_count=len(desired.data),
                    fingerprint=desired.fingerprint,
                    last_synced=datetime.now(UTC),
                )
            )
        if action == Action.SKIP:
            logger.debug("Secret %s/%s up to date", ns, name)
        return Outcome(ns, name, action, reason=reason, source_item_id=desired.source_item_id)

    def fail(self, failure: BuildFailure) -> Outcome:
        """Record a secret that could not even be built."""
        if failure.conflict:
            logger.error("Secret %s/%s: %s", failure.namespace, failure.name, failure.error)
            return Outcome(
                failure.namespace,
                failure.name,
                Action.FAIL,
                error=failure.error,
                source_item_id=failure.source_item_id,
            )
        state = self.store.get(failure.namespace, failure.name)
        return self._record_failure(
            failure.namespace,
            failure.name,
            failure.error,
            failure.source_item_id,
            failure.source_item_name,
            state,
        )

    def retire_renamed(self, namespace: str, old_name: str, item_id: str) -> bool:
        """Delete the Secret an item produced before its name override. True if retired."""
        state = self.store.get(namespace, old_name)
        if state is None or state.status != SecretStatus.ACTIVE or state.source_item_id != item_id:
            return False
        if self.dry_run:
            logger.info("[dry-run] would delete renamed secret %s/%s", namespace, old_name)
            return True
        self.applier.delete(namespace, old_name)
        self.store.mark_deleted(namespace, old_name, RENAMED_REASON)
        logger.info("Deleted renamed secret %s/%s", namespace, old_name)
        return True

    def _record_failure(
        self,
        namespace: str,
        name: str,
        error: str,
        item_id: str,
        item_name: str,
        state: SecretState | None,
    ) -> Outcome:
        logger.error("Secret %s/%s failed: %s", namespace, name, error)
        if not self.dry_run:
            self.store.upsert(
                SecretState(
                    namespace=namespace,
                    secret_name=name,
                    status=SecretStatus.FAILED,
                    source_item_id=item_id,
                    source_item_name=item_name,
                    data_keys_count=state.data_keys_count if state else 0,
                    fingerprint=state.fingerprint if state else None,
                    last_synced=datetime.now(UTC),
                    last_error=error,
                )
            )
        return Outcome(namespace, name, Action.FAIL, error=error, source_item_id=item_id)
