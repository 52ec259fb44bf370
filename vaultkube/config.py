"""
Centralized configuration for vaultkube.

All configuration is loaded from environment variables with sensible defaults.
The resulting struct is built once at startup and passed explicitly to the
normalizer, builder and coordinator; nothing reads the environment at parse
time.

Usage:
    from vaultkube.config import get_config
    cfg = get_config()
    print(cfg.fields.namespaces)     # "namespaces"
    print(cfg.sync.interval_seconds) # 3600
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_TRUE = ("true", "1", "yes")

# Allowed replacement characters for sanitized payload keys
REPLACEMENT_CHARS = ("-", ".", "_")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in _TRUE


@dataclass(frozen=True)
class DatabaseConfig:
    """PostgreSQL connection parameters for the State Store."""

    host: str = ""  # empty = Unix socket (peer auth); set to 127.0.0.1 for TCP
    port: int = 5432
    name: str = "vaultkube"
    user: str = "vaultkube"
    password: str = ""
    connect_timeout: int = 10

    @property
    def location(self) -> str:
        """``user@host:port/name`` for log and error messages (no password)."""
        return f"{self.user}@{self.host or '<socket>'}:{self.port}/{self.name}"

    @property
    def connect_kwargs(self) -> dict[str, str | int]:
        """psycopg2.connect() kwargs; sessions show up as ``vaultkube`` in pg_stat_activity."""
        kwargs: dict[str, str | int] = {
            "dbname": self.name,
            "port": self.port,
            "connect_timeout": self.connect_timeout,
            "application_name": "vaultkube",
        }
        if self.host:
            kwargs["host"] = self.host
        if self.user:
            kwargs["user"] = self.user
        if self.password:
            kwargs["password"] = self.password
        return kwargs


@dataclass(frozen=True)
class RedisConfig:
    """Redis Streams target for run summaries. Empty url disables publishing."""

    url: str = ""
    stream: str = "vaultkube:events:sync"
    maxlen: int = 1000

    @property
    def enabled(self) -> bool:
        return bool(self.url)


@dataclass(frozen=True)
class FieldNames:
    """Custom-field names that carry sync directives on a vault item."""

    namespaces: str = "namespaces"
    secret_name: str = "secret-name"
    username_key: str = "secret-key-username"
    password_key: str = "secret-key-password"
    legacy_password_key: str = "secret-key"
    ignore: str = "ignore-field"
    annotations: str = "secret-annotations"
    labels: str = "secret-labels"
    replacement_char: str = "-"

    def __post_init__(self) -> None:
        if self.replacement_char not in REPLACEMENT_CHARS:
            raise ValueError(
                f"Invalid field replacement char {self.replacement_char!r}; "
                f"expected one of {', '.join(REPLACEMENT_CHARS)}"
            )

    @property
    def metadata(self) -> frozenset[str]:
        """Lower-cased names of every directive field (never synced as payload)."""
        return frozenset(
            n.lower()
            for n in (
                self.namespaces,
                self.secret_name,
                self.username_key,
                self.password_key,
                self.legacy_password_key,
                self.ignore,
                self.annotations,
                self.labels,
            )
        )


@dataclass(frozen=True)
class KubernetesConfig:
    """Cluster access and Applier retry policy."""

    kubeconfig: str = ""  # empty = in-cluster first, then default kubeconfig
    context: str = ""
    request_timeout: float = 10.0
    max_attempts: int = 3
    backoff_base: float = 2.0
    backoff_max: float = 8.0
    managed_by: str = "vaultkube"


@dataclass(frozen=True)
class VaultConfig:
    """Bitwarden/Vaultwarden CLI fetcher settings."""

    bw_path: str = "bw"
    server_url: str = ""
    session: str = ""
    organization_id: str = ""
    fetch_timeout: float = 120.0
    sync_before_fetch: bool = True


@dataclass(frozen=True)
class SyncConfig:
    """Reconciliation behaviour."""

    interval_seconds: int = 3600
    continuous: bool = True
    delete_orphans: bool = True
    dry_run: bool = False
    lock_path: Path = field(default_factory=lambda: Path("/tmp/vaultkube-sync.lock"))
    protected_secrets: tuple[str, ...] = ("vaultkube-token",)


@dataclass(frozen=True)
class WebhookConfig:
    """Health/webhook HTTP listener."""

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 8080
    secret: str = ""


@dataclass(frozen=True)
class Config:
    """Top-level vaultkube configuration."""

    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    fields: FieldNames = field(default_factory=FieldNames)
    kubernetes: KubernetesConfig = field(default_factory=KubernetesConfig)
    vault: VaultConfig = field(default_factory=VaultConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    log_level: str = "INFO"


# Singleton
_config: Config | None = None


def get_config() -> Config:
    """Get or create the singleton config from environment variables."""
    global _config
    if _config is not None:
        return _config
    _config = _load_from_env()
    return _config


def _load_from_env() -> Config:
    """Load configuration from environment variables."""
    db = DatabaseConfig(
        host=os.environ.get("VAULTKUBE_DB_HOST", ""),
        port=int(os.environ.get("VAULTKUBE_DB_PORT", "5432")),
        name=os.environ.get("VAULTKUBE_DB_NAME", "vaultkube"),
        user=os.environ.get("VAULTKUBE_DB_USER", os.environ.get("USER", "vaultkube")),
        password=os.environ.get("VAULTKUBE_DB_PASSWORD", ""),
        connect_timeout=int(os.environ.get("VAULTKUBE_DB_CONNECT_TIMEOUT", "10")),
    )

    redis_cfg = RedisConfig(
        url=os.environ.get("VAULTKUBE_REDIS_URL", ""),
        stream=os.environ.get("VAULTKUBE_REDIS_STREAM", "vaultkube:events:sync"),
        maxlen=int(os.environ.get("VAULTKUBE_REDIS_MAXLEN", "1000")),
    )

    fields = FieldNames(
        namespaces=os.environ.get("VAULTKUBE_FIELD_NAMESPACES", "namespaces"),
        secret_name=os.environ.get("VAULTKUBE_FIELD_SECRET_NAME", "secret-name"),
        username_key=os.environ.get("VAULTKUBE_FIELD_USERNAME_KEY", "secret-key-username"),
        password_key=os.environ.get("VAULTKUBE_FIELD_PASSWORD_KEY", "secret-key-password"),
        legacy_password_key=os.environ.get("VAULTKUBE_FIELD_LEGACY_PASSWORD_KEY", "secret-key"),
        ignore=os.environ.get("VAULTKUBE_FIELD_IGNORE", "ignore-field"),
        annotations=os.environ.get("VAULTKUBE_FIELD_ANNOTATIONS", "secret-annotations"),
        labels=os.environ.get("VAULTKUBE_FIELD_LABELS", "secret-labels"),
        replacement_char=os.environ.get("VAULTKUBE_FIELD_REPLACEMENT_CHAR", "-") or "-",
    )

    kube = KubernetesConfig(
        kubeconfig=os.environ.get("VAULTKUBE_KUBECONFIG", os.environ.get("KUBECONFIG", "")),
        context=os.environ.get("VAULTKUBE_KUBE_CONTEXT", ""),
        request_timeout=float(os.environ.get("VAULTKUBE_KUBE_TIMEOUT", "10")),
        max_attempts=int(os.environ.get("VAULTKUBE_KUBE_MAX_ATTEMPTS", "3")),
        backoff_base=float(os.environ.get("VAULTKUBE_KUBE_BACKOFF_BASE", "2")),
        backoff_max=float(os.environ.get("VAULTKUBE_KUBE_BACKOFF_MAX", "8")),
        managed_by=os.environ.get("VAULTKUBE_MANAGED_BY", "vaultkube"),
    )

    vault = VaultConfig(
        bw_path=os.environ.get("VAULTKUBE_BW_PATH", "bw"),
        server_url=os.environ.get("VAULTKUBE_VAULT_URL", ""),
        session=os.environ.get("VAULTKUBE_BW_SESSION", os.environ.get("BW_SESSION", "")),
        organization_id=os.environ.get("VAULTKUBE_VAULT_ORGANIZATION_ID", ""),
        fetch_timeout=float(os.environ.get("VAULTKUBE_VAULT_TIMEOUT", "120")),
        sync_before_fetch=_env_bool("VAULTKUBE_VAULT_SYNC_BEFORE_FETCH", True),
    )

    protected = os.environ.get("VAULTKUBE_PROTECTED_SECRETS", "vaultkube-token")
    sync = SyncConfig(
        interval_seconds=int(os.environ.get("VAULTKUBE_SYNC_INTERVAL", "3600")),
        continuous=_env_bool("VAULTKUBE_CONTINUOUS_SYNC", True),
        delete_orphans=_env_bool("VAULTKUBE_DELETE_ORPHANS", True),
        dry_run=_env_bool("VAULTKUBE_DRY_RUN", False),
        lock_path=Path(os.environ.get("VAULTKUBE_LOCK_PATH", "/tmp/vaultkube-sync.lock")),
        protected_secrets=tuple(s.strip() for s in protected.split(",") if s.strip()),
    )

    webhook = WebhookConfig(
        enabled=_env_bool("VAULTKUBE_WEBHOOK_ENABLED", True),
        host=os.environ.get("VAULTKUBE_WEBHOOK_HOST", "0.0.0.0"),
        port=int(os.environ.get("VAULTKUBE_WEBHOOK_PORT", "8080")),
        secret=os.environ.get("VAULTKUBE_WEBHOOK_SECRET", ""),
    )

    return Config(
        db=db,
        redis=redis_cfg,
        fields=fields,
        kubernetes=kube,
        vault=vault,
        sync=sync,
        webhook=webhook,
        log_level=os.environ.get("VAULTKUBE_LOG_LEVEL", "INFO").upper(),
    )


def reset_config() -> None:
    """Reset the singleton config (for testing)."""
    global _config
    _config = None
