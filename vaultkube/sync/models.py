"""
Data models for the reconciliation engine.

All engine models are plain dataclasses (webhook payloads live in events.py). Vault items are
parsed from the ``bw list items`` JSON shape (camelCase keys) and never
persisted; SecretState and SyncRun mirror the State Store tables.
"""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import IntEnum, StrEnum
from typing import Any


class ItemType(IntEnum):
    LOGIN = 1
    SECURE_NOTE = 2
    CARD = 3
    IDENTITY = 4
    SSH_KEY = 5


class SecretStatus(StrEnum):
    ACTIVE = "Active"
    FAILED = "Failed"
    DELETED = "Deleted"


class Action(StrEnum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"
    FAIL = "fail"


class TriggerKind(StrEnum):
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    MANUAL = "manual"


class RunStatus(StrEnum):
    SUCCESS = "SUCCESS"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    UP_TO_DATE = "UP-TO-DATE"


class RunPhase(StrEnum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    RUNNING = "running"
    FINALIZING = "finalizing"


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def _parse_ts(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


# ─── Vault item ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class CustomField:
    name: str
    value: str = ""
    type: int = 0  # 0 text, 1 hidden, 2 boolean, 3 linked


@dataclass(frozen=True)
class LoginInfo:
    username: str = ""
    password: str = ""
    totp: str = ""
    uris: tuple[str, ...] = ()


@dataclass(frozen=True)
class CardInfo:
    cardholder_name: str = ""
    brand: str = ""
    number: str = ""
    exp_month: str = ""
    exp_year: str = ""
    code: str = ""


@dataclass(frozen=True)
class IdentityInfo:
    title: str = ""
    first_name: str = ""
    middle_name: str = ""
    last_name: str = ""
    address1: str = ""
    address2: str = ""
    address3: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = ""
    company: str = ""
    email: str = ""
    phone: str = ""
    ssn: str = ""
    username: str = ""
    passport_number: str = ""
    license_number: str = ""


@dataclass(frozen=True)
class SshKeyInfo:
    private_key: str = ""
    public_key: str = ""
    fingerprint: str = ""


@dataclass(frozen=True)
class VaultItem:
    """Immutable snapshot of one vault record, fetched fresh each run."""

    id: str
    name: str
    type: ItemType = ItemType.LOGIN
    notes: str = ""
    login: LoginInfo | None = None
    card: CardInfo | None = None
    identity: IdentityInfo | None = None
    ssh_key: SshKeyInfo | None = None
    fields: tuple[CustomField, ...] = ()
    organization_id: str | None = None
    collection_ids: tuple[str, ...] = ()
    revision_date: datetime | None = None
    deleted_date: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_date is not None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> VaultItem:
        """Build from a ``bw list items`` JSON object."""
        try:
            item_type = ItemType(int(raw.get("type") or ItemType.LOGIN))
        except ValueError:
            item_type = ItemType.LOGIN

        login = None
        if raw.get("login"):
            lg = raw["login"]
            login = LoginInfo(
                username=_str(lg.get("username")),
                password=_str(lg.get("password")),
                totp=_str(lg.get("totp")),
                uris=tuple(
                    _str(u.get("uri")) for u in lg.get("uris") or [] if u and u.get("uri")
                ),
            )

        card = None
        if raw.get("card"):
            cd = raw["card"]
            card = CardInfo(
                cardholder_name=_str(cd.get("cardholderName")),
                brand=_str(cd.get("brand")),
                number=_str(cd.get("number")),
                exp_month=_str(cd.get("expMonth")),
                exp_year=_str(cd.get("expYear")),
                code=_str(cd.get("code")),
            )

        identity = None
        if raw.get("identity"):
            idn = raw["identity"]
            identity = IdentityInfo(
                title=_str(idn.get("title")),
                first_name=_str(idn.get("firstName")),
                middle_name=_str(idn.get("middleName")),
                last_name=_str(idn.get("lastName")),
                address1=_str(idn.get("address1")),
                address2=_str(idn.get("address2")),
                address3=_str(idn.get("address3")),
                city=_str(idn.get("city")),
                state=_str(idn.get("state")),
                postal_code=_str(idn.get("postalCode")),
                country=_str(idn.get("country")),
                company=_str(idn.get("company")),
                email=_str(idn.get("email")),
                phone=_str(idn.get("phone")),
                ssn=_str(idn.get("ssn")),
                username=_str(idn.get("username")),
                passport_number=_str(idn.get("passportNumber")),
                license_number=_str(idn.get("licenseNumber")),
            )

        ssh_key = None
        if raw.get("sshKey"):
            sk = raw["sshKey"]
            ssh_key = SshKeyInfo(
                private_key=_str(sk.get("privateKey")),
                public_key=_str(sk.get("publicKey")),
                fingerprint=_str(sk.get("keyFingerprint") or sk.get("fingerprint")),
            )

        return cls(
            id=_str(raw.get("id")),
            name=_str(raw.get("name")),
            type=item_type,
            notes=_str(raw.get("notes")),
            login=login,
            card=card,
            identity=identity,
            ssh_key=ssh_key,
            fields=tuple(
                CustomField(
                    name=_str(f.get("name")),
                    value=_str(f.get("value")),
                    type=int(f.get("type") or 0),
                )
                for f in raw.get("fields") or []
                if f and f.get("name")
            ),
            organization_id=raw.get("organizationId"),
            collection_ids=tuple(raw.get("collectionIds") or ()),
            revision_date=_parse_ts(raw.get("revisionDate")),
            deleted_date=_parse_ts(raw.get("deletedDate")),
        )


# ─── Directives and desired state ────────────────────────────────────


@dataclass(frozen=True)
class SyncDirective:
    """Sync instructions extracted from one vault item."""

    namespaces: tuple[str, ...]
    secret_name: str | None = None
    username_key: str | None = None
    password_key: str | None = None
    ignore: frozenset[str] = frozenset()  # lower-cased field names
    annotations: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)


def fingerprint(data: dict[str, bytes]) -> str:
    """SHA-256 over the key-sorted payload. Stable across dict ordering."""
    h = hashlib.sha256()
    for key in sorted(data):
        h.update(key.encode())
        h.update(b"\0")
        h.update(data[key])
        h.update(b"\0")
    return h.hexdigest()


@dataclass
class DesiredSecret:
    """The Secret the engine believes should exist at (namespace, name)."""

    namespace: str
    name: str
    data: dict[str, bytes]
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    source_item_id: str = ""
    source_item_name: str = ""

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.data)

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)


@dataclass
class BuildFailure:
    """A (namespace, name) that could not be built; reconciles to Fail."""

    namespace: str
    name: str
    error: str
    source_item_id: str = ""
    source_item_name: str = ""
    # Another item already owns (namespace, name); its state row is left alone
    conflict: bool = False

    @property
    def key(self) -> tuple[str, str]:
        return (self.namespace, self.name)


@dataclass
class LiveSecret:
    """What the cluster currently holds for one Secret."""

    namespace: str
    name: str
    data: dict[str, bytes] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    resource_version: str | None = None
    type: str = "Opaque"


# ─── Persistence ─────────────────────────────────────────────────────


@dataclass
class SecretState:
    """Row in secret_states."""

    namespace: str
    secret_name: str
    status: SecretStatus
    source_item_id: str = ""
    source_item_name: str = ""
    data_keys_count: int = 0
    fingerprint: str | None = None
    last_synced: datetime = field(default_factory=lambda: datetime.now(UTC))
    created_at: datetime | None = None
    last_error: str | None = None


@dataclass
class Outcome:
    """Result of reconciling one (namespace, name)."""

    namespace: str
    name: str
    action: Action
    reason: str = ""
    error: str | None = None
    source_item_id: str = ""

    @property
    def ok(self) -> bool:
        return self.action != Action.FAIL

    @property
    def changed(self) -> bool:
        return self.action in (Action.CREATE, Action.UPDATE)


@dataclass
class SyncRun:
    """Row in the append-only sync_runs log."""

    trigger: TriggerKind
    started_at: datetime
    finished_at: datetime
    status: RunStatus
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    items_fetched: int = 0
    namespaces: dict[str, dict[str, Any]] = field(default_factory=dict)
    orphans: dict[str, Any] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    selective_item_id: str | None = None
    dry_run: bool = False
