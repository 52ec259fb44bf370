"""Exception taxonomy for the reconciliation engine."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for reconciliation errors."""


class FetchError(SyncError):
    """Vault items could not be retrieved. Fatal for the run."""


class DirectiveError(SyncError):
    """A directive on an item with a namespace directive is unusable.

    Carries the item's namespaces and any ``secret-name`` override so every
    affected secret can be failed individually under its real name.
    """

    def __init__(
        self,
        message: str,
        namespaces: tuple[str, ...] = (),
        secret_name: str | None = None,
    ) -> None:
        super().__init__(message)
        self.namespaces = namespaces
        self.secret_name = secret_name


class SecretValidationError(SyncError):
    """Invalid secret name, namespace, or payload key."""


class ClusterApplyError(SyncError):
    """Kubernetes API call failed and will not be retried."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransientClusterError(ClusterApplyError):
    """Kubernetes API call failed in a way worth retrying."""


class ClusterPermissionError(ClusterApplyError):
    """401/403 from the API server. Surfaced verbatim so RBAC can be fixed."""
