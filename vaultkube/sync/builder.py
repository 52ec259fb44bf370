"""
Desired State Builder — expands vault items into target Secrets.

One item fans out to one DesiredSecret per namespace. Payload assembly is
layered and first-writer-wins on exact keys:

1. structured fields of the item type (login, SSH key, card, identity, note)
2. custom fields not in the ignore set and not directive fields
3. ``#kv:key=value`` lines and fenced ``secret:<key>`` blocks in the notes

Keys that differ only by case are a validation error. Output is a
deterministic function of (items, config) so fingerprints are stable.

Naming: the Secret is named after the ``secret-name`` directive when one is
set, else after the item name run through ``sanitize_secret_name``. An
explicit ``secret-name`` is used verbatim and is NOT sanitized; a value that
is not a valid DNS-1123 name fails the item instead of being rewritten.
Older Vaultwarden sync deployments lower-cased and rewrote overrides, so
an override such as ``App_DB`` that used to produce ``app-db`` now fails
until it is corrected in the vault.

Default keys: the password key is the override or item name through
``sanitize_field_name`` (case kept, so item ``MyDatabase`` gives key
``MyDatabase``); the username key is ``<secret name>-username``.
"""

from __future__ import annotations

import logging
import re
import textwrap
from dataclasses import dataclass, field

from vaultkube.config import Config, FieldNames
from vaultkube.sync.errors import DirectiveError, SecretValidationError, SyncError
from vaultkube.sync.models import (
    BuildFailure,
    DesiredSecret,
    ItemType,
    SyncDirective,
    VaultItem,
)
from vaultkube.sync.normalizer import (
    TAG_IGNORE,
    TAG_LEGACY_PASSWORD_KEY,
    TAG_NAMESPACES,
    TAG_PASSWORD_KEY,
    TAG_SECRET_NAME,
    TAG_USERNAME_KEY,
    normalize,
)

logger = logging.getLogger(__name__)

# Reserved metadata; directive values never override these
OWNER_LABEL = "app.kubernetes.io/managed-by"
ANNOTATION_PREFIX = "vaultkube.io/"
SOURCE_ITEM_ANNOTATION = ANNOTATION_PREFIX + "source-item-id"
MANAGED_KEYS_ANNOTATION = ANNOTATION_PREFIX + "managed-keys"
FINGERPRINT_ANNOTATION = ANNOTATION_PREFIX + "fingerprint"

MAX_SECRET_NAME = 253
MAX_NAMESPACE = 63
_DNS_LABEL_RE = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")

_PRIVATE_KEY_FIELDS = ("ssh_key", "private_key", "ssh_private_key", "key")
_USERNAME_FIELDS = ("username", "user", "login")
_PEM_RE = re.compile(
    r"(-----BEGIN [A-Z0-9 ]*PRIVATE KEY-----)(.*?)(-----END [A-Z0-9 ]*PRIVATE KEY-----)",
    re.DOTALL,
)
_NOTE_TAGS = tuple(
    f"#{t}:"
    for t in (
        TAG_NAMESPACES,
        TAG_SECRET_NAME,
        TAG_USERNAME_KEY,
        TAG_PASSWORD_KEY,
        TAG_LEGACY_PASSWORD_KEY,
        TAG_IGNORE,
        "kv",
    )
)


@dataclass
class BuildResult:
    """Everything the reconciler needs from one pass over the vault."""

    secrets: list[DesiredSecret] = field(default_factory=list)
    failures: list[BuildFailure] = field(default_factory=list)
    excluded: int = 0
    # (namespace, previous default name, item id) for items whose name override
    # moved their secret away from the item-name-derived name
    renamed: list[tuple[str, str, str]] = field(default_factory=list)

    @property
    def namespaces(self) -> set[str]:
        return {s.namespace for s in self.secrets} | {f.namespace for f in self.failures}


# ─── Sanitizers and validators ───────────────────────────────────────


def sanitize_secret_name(name: str) -> str:
    """Derive a DNS-1123 label from a free-form item name."""
    value = re.sub(r"[^a-z0-9-]+", "-", name.strip().lower())
    value = re.sub(r"-{2,}", "-", value).strip("-")
    value = value[:MAX_SECRET_NAME].strip("-")
    if not value:
        raise SecretValidationError(f"Cannot derive a secret name from item name '{name}'")
    return value


def sanitize_field_name(name: str, replacement: str = "-") -> str:
    """Map a field name onto the Secret key alphabet ``[-._a-zA-Z0-9]``."""
    value = re.sub(r"[^-._a-zA-Z0-9]", replacement, name.strip())
    value = re.sub(re.escape(replacement) + "{2,}", replacement, value).strip(replacement)
    if not any(c.isalnum() for c in value):
        raise SecretValidationError(f"Field name '{name}' has no usable characters for a secret key")
    return value


def validate_secret_name(name: str) -> None:
    if len(name) > MAX_SECRET_NAME or not _DNS_LABEL_RE.match(name):
        raise SecretValidationError(
            f"Invalid secret name '{name}': must be lowercase alphanumerics or '-', "
            f"start and end alphanumeric, at most {MAX_SECRET_NAME} characters"
        )


def validate_namespace(namespace: str) -> None:
    if len(namespace) > MAX_NAMESPACE or not _DNS_LABEL_RE.match(namespace):
        raise SecretValidationError(f"Invalid namespace '{namespace}'")


# ─── Value formatting ────────────────────────────────────────────────


def format_value(value: str) -> str:
    """Turn literal ``\\n``/``\\r``/``\\t`` escapes into characters and normalize CRLF."""
    if "\\" in value:
        placeholder = "\x00"
        value = (
            value.replace("\\\\", placeholder)
            .replace("\\n", "\n")
            .replace("\\r", "\r")
            .replace("\\t", "\t")
            .replace(placeholder, "\\")
        )
    return value.replace("\r\n", "\n")


def normalize_private_key(value: str) -> str:
    """Re-wrap a PEM private key body at 64 columns. Other text is untouched."""
    value = format_value(value).strip()
    m = _PEM_RE.search(value)
    if not m or ":" in m.group(2):
        # Not PEM, or an encrypted key with Proc-Type headers
        return value
    body = "".join(m.group(2).split())
    lines = textwrap.wrap(body, 64)
    return "\n".join([m.group(1), *lines, m.group(3)]) + "\n"


# ─── Notes ───────────────────────────────────────────────────────────


def note_body(notes: str) -> str:
    """Notes with directive tags, ``#kv:`` lines and fenced secret blocks removed."""
    kept: list[str] = []
    in_block = False
    for line in notes.replace("\r\n", "\n").split("\n"):
        stripped = line.strip()
        lowered = stripped.lower()
        if in_block:
            if stripped == "```":
                in_block = False
            continue
        if lowered.startswith("```secret:"):
            in_block = True
            continue
        if lowered.startswith(_NOTE_TAGS):
            continue
        kept.append(line)
    return "\n".join(kept).strip("\n")


def notes_payload(notes: str) -> list[tuple[str, str]]:
    """Key/value pairs declared in the notes. Unterminated blocks are dropped."""
    pairs: list[tuple[str, str]] = []
    block_key: str | None = None
    block: list[str] = []
    for line in notes.replace("\r\n", "\n").split("\n"):
        stripped = line.strip()
        if block_key is not None:
            if stripped == "```":
                pairs.append((block_key, "\n".join(block)))
                block_key, block = None, []
            else:
                block.append(line)
            continue
        lowered = stripped.lower()
        if lowered.startswith("```secret:"):
            block_key = stripped[len("```secret:"):].strip()
            continue
        if lowered.startswith("#kv:"):
            key, sep, value = stripped[len("#kv:"):].partition("=")
            if sep and key.strip():
                pairs.append((key.strip(), value.strip()))
    return pairs


# ─── Payload ─────────────────────────────────────────────────────────


def _custom_value(item: VaultItem, names: tuple[str, ...]) -> str:
    for f in item.fields:
        if f.name.strip().lower() in names and f.value.strip():
            return f.value
    return ""


def _structured(item: VaultItem, directive: SyncDirective, secret_name: str, fields: FieldNames) -> list[tuple[str, str]]:
    base = sanitize_field_name(secret_name, fields.replacement_char)
    # The default password key keeps the case of the override or item name
    password_key = directive.password_key or sanitize_field_name(
        directive.secret_name or item.name, fields.replacement_char
    )
    username_key = directive.username_key or f"{base}-username"

    pairs: list[tuple[str, str]] = []
    login = item.login

    password = ""
    if login and login.password:
        password = format_value(login.password)
    elif item.ssh_key and item.ssh_key.private_key:
        password = normalize_private_key(item.ssh_key.private_key)
    elif key_field := _custom_value(item, _PRIVATE_KEY_FIELDS):
        password = normalize_private_key(key_field)
    if not password and item.notes:
        password = note_body(item.notes)
    if password:
        pairs.append((password_key, password))

    username = (
        (login.username if login else "")
        or (item.identity.username if item.identity else "")
        or _custom_value(item, _USERNAME_FIELDS)
    )
    if username:
        pairs.append((username_key, format_value(username)))

    if login:
        if login.uris:
            pairs.append(("uri", login.uris[0]))
        if login.totp:
            pairs.append(("totp", login.totp))

    if item.type == ItemType.CARD and item.card:
        c = item.card
        pairs += [
            ("cardholder-name", c.cardholder_name),
            ("card-brand", c.brand),
            ("card-number", c.number),
            ("card-exp-month", c.exp_month),
            ("card-exp-year", c.exp_year),
            ("card-code", c.code),
        ]

    if item.type == ItemType.IDENTITY and item.identity:
        i = item.identity
        pairs += [
            ("title", i.title),
            ("first-name", i.first_name),
            ("middle-name", i.middle_name),
            ("last-name", i.last_name),
            ("address1", i.address1),
            ("address2", i.address2),
            ("address3", i.address3),
            ("city", i.city),
            ("state", i.state),
            ("postal-code", i.postal_code),
            ("country", i.country),
            ("company", i.company),
            ("email", i.email),
            ("phone", i.phone),
            ("ssn", i.ssn),
            ("passport-number", i.passport_number),
            ("license-number", i.license_number),
        ]

    if item.ssh_key:
        pairs.append((f"{base}-public-key", item.ssh_key.public_key.strip()))
        pairs.append((f"{base}-fingerprint", item.ssh_key.fingerprint.strip()))

    return pairs


def build_payload(
    item: VaultItem, directive: SyncDirective, secret_name: str, fields: FieldNames
) -> dict[str, bytes]:
    """Assemble the Secret data for one item. Raises SecretValidationError."""
    payload: dict[str, str] = {}

    def put(key: str, value: str) -> None:
        if value and key not in payload:
            payload[key] = value

    for key, value in _structured(item, directive, secret_name, fields):
        put(key, value)

    metadata = fields.metadata
    for f in item.fields:
        lowered = f.name.strip().lower()
        if lowered in metadata or lowered in directive.ignore or not f.value:
            continue
        key = sanitize_field_name(f.name, fields.replacement_char)
        if key.lower() in directive.ignore:
            continue
        put(key, format_value(f.value))

    for name, value in notes_payload(item.notes):
        key = sanitize_field_name(name, fields.replacement_char)
        if key.lower() in directive.ignore or key.lower() in metadata:
            continue
        put(key, value)

    seen: dict[str, str] = {}
    for key in payload:
        other = seen.setdefault(key.lower(), key)
        if other != key:
            raise SecretValidationError(
                f"Payload keys '{other}' and '{key}' collide (keys differ only by case)"
            )

    return {k: v.encode("utf-8") for k, v in payload.items()}


# ─── Fan-out ─────────────────────────────────────────────────────────


def _failure_name(item: VaultItem, directive: SyncDirective | None = None) -> str:
    if directive and directive.secret_name:
        return directive.secret_name
    try:
        return sanitize_secret_name(item.name)
    except SecretValidationError:
        return item.name or item.id


def build_desired(items: list[VaultItem], config: Config) -> BuildResult:
    """Build the desired set for every item. Never raises for a single bad item.

    Items are visited in id order and the first item to reach a
    (namespace, name) owns it; later items targeting the same Secret fail
    with a conflict and leave the owner's state alone.
    """
    fields = config.fields
    result = BuildResult()
    claimed: dict[tuple[str, str], VaultItem] = {}

    for item in sorted(items, key=lambda i: i.id):

        def fail(ns: str, name: str, error: str, item: VaultItem = item) -> None:
            owner = claimed.setdefault((ns, name), item)
            result.failures.append(
                BuildFailure(ns, name, error, item.id, item.name, conflict=owner is not item)
            )

        try:
            directive = normalize(item, fields)
        except DirectiveError as e:
            logger.warning("Item '%s' (%s) has a bad directive: %s", item.name, item.id, e)
            for ns in e.namespaces:
                fail(ns, e.secret_name or _failure_name(item), str(e))
            continue
        if directive is None:
            result.excluded += 1
            continue

        name = _failure_name(item, directive)
        try:
            if directive.secret_name is None:
                name = sanitize_secret_name(item.name)
            validate_secret_name(name)
            data = build_payload(item, directive, name, fields)
        except SyncError as e:
            logger.warning("Item '%s' (%s) cannot be synced: %s", item.name, item.id, e)
            for ns in directive.namespaces:
                fail(ns, name, str(e))
            continue

        labels = {**directive.labels, OWNER_LABEL: config.kubernetes.managed_by}
        annotations = {
            k: v for k, v in directive.annotations.items() if not k.startswith(ANNOTATION_PREFIX)
        }
        annotations[SOURCE_ITEM_ANNOTATION] = item.id

        previous_name = None
        if directive.secret_name is not None:
            try:
                default = sanitize_secret_name(item.name)
            except SecretValidationError:
                default = None
            if default and default != name:
                previous_name = default

        for ns in directive.namespaces:
            try:
                validate_namespace(ns)
            except SecretValidationError as e:
                fail(ns, name, str(e))
                continue

            owner = claimed.get((ns, name))
            if owner is not None:
                fail(ns, name, f"Secret {ns}/{name} is already produced by item '{owner.name}' ({owner.id})")
                continue
            claimed[(ns, name)] = item

            result.secrets.append(
                DesiredSecret(
                    namespace=ns,
                    name=name,
                    data=dict(data),
                    labels=dict(labels),
                    annotations=dict(annotations),
                    source_item_id=item.id,
                    source_item_name=item.name,
                )
            )
            if previous_name:
                result.renamed.append((ns, previous_name, item.id))

    logger.info(
        "Desired state: %d secrets, %d failures, %d items excluded",
        len(result.secrets),
        len(result.failures),
        result.excluded,
    )
    return result
