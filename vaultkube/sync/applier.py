"""
Cluster Applier — create/patch/delete Secrets through the Kubernetes API.

Every operation is idempotent from the caller's side: create on an existing
Secret becomes a patch, patch on a missing Secret becomes a create, delete on
a missing Secret is a no-op. Transient API failures (connection errors, 409,
429, 5xx) are retried with bounded exponential backoff via tenacity; 401/403
and other client errors are raised immediately.

Patch is read-merge-replace guarded by resourceVersion. Keys the engine did
not write (tracked in the managed-keys annotation) are preserved.
"""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import urllib3
from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from vaultkube.config import KubernetesConfig
from vaultkube.sync.builder import FINGERPRINT_ANNOTATION, MANAGED_KEYS_ANNOTATION, OWNER_LABEL
from vaultkube.sync.errors import ClusterApplyError, ClusterPermissionError, TransientClusterError
from vaultkube.sync.models import DesiredSecret, LiveSecret

logger = logging.getLogger(__name__)

TRANSIENT_STATUSES = frozenset({409, 429, 500, 502, 503, 504})
PERMISSION_STATUSES = frozenset({401, 403})


def load_core_api(cfg: KubernetesConfig) -> client.CoreV1Api:
    """In-cluster config first, then kubeconfig."""
    if cfg.kubeconfig:
        k8s_config.load_kube_config(config_file=cfg.kubeconfig, context=cfg.context or None)
    else:
        try:
            k8s_config.load_incluster_config()
        except k8s_config.ConfigException:
            k8s_config.load_kube_config(context=cfg.context or None)
    return client.CoreV1Api()


def _error_message(e: ApiException) -> str:
    """The API server's own message when the body is a Status object."""
    if e.body:
        try:
            body = json.loads(e.body)
            if isinstance(body, dict) and body.get("message"):
                return str(body["message"])
        except (TypeError, ValueError):
            pass
    return str(e.reason or e)


def translate(e: ApiException, what: str) -> ClusterApplyError:
    status = e.status
    message = f"{what}: {status} {_error_message(e)}"
    if status in PERMISSION_STATUSES:
        return ClusterPermissionError(message, status)
    if status in TRANSIENT_STATUSES:
        return TransientClusterError(message, status)
    return ClusterApplyError(message, status)


@contextmanager
def api_errors(what: str) -> Iterator[None]:
    """Map kubernetes-client and transport exceptions onto the engine taxonomy."""
    try:
        yield
    except ApiException as e:
        raise translate(e, what) from e
    except (urllib3.exceptions.HTTPError, OSError) as e:
        raise TransientClusterError(f"{what}: {e}") from e


def managed_keys(live: LiveSecret) -> set[str] | None:
    """Keys recorded as engine-written on the live Secret, or None if unrecorded."""
    raw = live.annotations.get(MANAGED_KEYS_ANNOTATION)
    if raw is None:
        return None
    try:
        return {str(k) for k in json.loads(raw)}
    except (TypeError, ValueError):
        return None


def to_live(secret: Any) -> LiveSecret:
    meta = secret.metadata
    return LiveSecret(
        namespace=meta.namespace,
        name=meta.name,
        data={k: base64.b64decode(v) for k, v in (secret.data or {}).items()},
        labels=dict(meta.labels or {}),
        annotations=dict(meta.annotations or {}),
        resource_version=meta.resource_version,
        type=secret.type or "Opaque",
    )


def build_body(secret: DesiredSecret, live: LiveSecret | None = None) -> client.V1Secret:
    """V1Secret for ``secret`` merged over ``live``.

    External keys on the live Secret survive; keys the engine wrote before
    but no longer wants are dropped. Reserved labels/annotations always win.
    """
    data: dict[str, bytes] = {}
    labels: dict[str, str] = {}
    annotations: dict[str, str] = {}
    if live is not None:
        previous = managed_keys(live) or set()
        data = {k: v for k, v in live.data.items() if k not in previous}
        labels = dict(live.labels)
        annotations = dict(live.annotations)

    data.update(secret.data)
    labels.update(secret.labels)
    annotations.update(secret.annotations)
    annotations[MANAGED_KEYS_ANNOTATION] = json.dumps(sorted(secret.data))
    annotations[FINGERPRINT_ANNOTATION] = secret.fingerprint

    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(
            name=secret.name,
            namespace=secret.namespace,
            labels=labels,
            annotations=annotations,
            resource_version=live.resource_version if live else None,
        ),
        type=live.type if live else "Opaque",
        data={k: base64.b64encode(v).decode("ascii") for k, v in data.items()},
    )


class ClusterApplier:
    """Kubernetes CoreV1Api wrapper with retry on transient failures."""

    def __init__(self, config: KubernetesConfig, api: client.CoreV1Api | None = None) -> None:
        self.config = config
        self.api = api if api is not None else load_core_api(config)
        self.owner_selector = f"{OWNER_LABEL}={config.managed_by}"
        self._retrying = Retrying(
            stop=stop_after_attempt(max(1, config.max_attempts)),
            wait=wait_exponential(multiplier=config.backoff_base, max=config.backoff_max),
            retry=retry_if_exception_type(TransientClusterError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    # ─── Single attempts ─────────────────────────────────────────────

    def _read_once(self, namespace: str, name: str) -> LiveSecret | None:
        try:
            with api_errors(f"read secret {namespace}/{name}"):
                secret = self.api.read_namespaced_secret(
                    name=name,
                    namespace=namespace,
                    _request_timeout=self.config.request_timeout,
                )
        except ClusterApplyError as e:
            if e.status == 404:
                return None
            raise
        return to_live(secret)

    def _create_once(self, secret: DesiredSecret) -> bool:
        """False when the Secret already exists."""
        what = f"create secret {secret.namespace}/{secret.name}"
        try:
            with api_errors(what):
                self.api.create_namespaced_secret(
                    namespace=secret.namespace,
                    body=build_body(secret),
                    _request_timeout=self.config.request_timeout,
                )
        except ClusterApplyError as e:
            if e.status == 409:
                return False
            if e.status == 404:
                raise ClusterApplyError(
                    f"{what}: namespace '{secret.namespace}' does not exist", 404
                ) from e
            raise
        return True

    def _patch_once(self, secret: DesiredSecret) -> bool:
        """True when the Secret had to be created."""
        live = self._read_once(secret.namespace, secret.name)
        if live is None:
            if self._create_once(secret):
                return True
            # Raced with another writer; retry the read-merge-replace
            raise TransientClusterError(
                f"create secret {secret.namespace}/{secret.name}: appeared concurrently", 409
            )
        with api_errors(f"replace secret {secret.namespace}/{secret.name}"):
            self.api.replace_namespaced_secret(
                name=secret.name,
                namespace=secret.namespace,
                body=build_body(secret, live),
                _request_timeout=self.config.request_timeout,
            )
        return False

    def _delete_once(self, namespace: str, name: str) -> bool:
        try:
            with api_errors(f"delete secret {namespace}/{name}"):
                self.api.delete_namespaced_secret(
                    name=name,
                    namespace=namespace,
                    _request_timeout=self.config.request_timeout,
                )
        except ClusterApplyError as e:
            if e.status == 404:
                return False
            raise
        return True

    def _list_once(self, namespace: str) -> list[str]:
        try:
            with api_errors(f"list secrets in {namespace}"):
                result = self.api.list_namespaced_secret(
                    namespace=namespace,
                    label_selector=self.owner_selector,
                    _request_timeout=self.config.request_timeout,
                )
        except ClusterApplyError as e:
            if e.status == 404:
                return []
            raise
        return sorted(s.metadata.name for s in result.items or [])

    # ─── Public, retried ─────────────────────────────────────────────

    def read(self, namespace: str, name: str) -> LiveSecret | None:
        return self._retrying(self._read_once, namespace, name)

    def create(self, secret: DesiredSecret) -> None:
        if self._retrying(self._create_once, secret):
            logger.info("Created secret %s/%s", secret.namespace, secret.name)
            return
        logger.debug("Secret %s/%s already exists, updating", secret.namespace, secret.name)
        self.patch(secret)

    def patch(self, secret: DesiredSecret) -> None:
        created = self._retrying(self._patch_once, secret)
        logger.info(
            "%s secret %s/%s", "Created" if created else "Updated", secret.namespace, secret.name
        )

    def delete(self, namespace: str, name: str) -> None:
        if self._retrying(self._delete_once, namespace, name):
            logger.info("Deleted secret %s/%s", namespace, name)
        else:
            logger.debug("Secret %s/%s already absent", namespace, name)

    def list_owned(self, namespace: str) -> list[str]:
        """Names of engine-owned Secrets in ``namespace`` (label-selected)."""
        return self._retrying(self._list_once, namespace)
