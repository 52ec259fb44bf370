"""
Item Normalizer — extracts sync directives from a vault item.

Each scalar directive resolves through an ordered fallback chain of
extractor functions: a custom field (configured name, then legacy aliases)
first, then a ``#tag:`` line in the free-text notes. The first extractor that
yields a non-empty value wins. Pure function of item content and FieldNames.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence

from vaultkube.config import FieldNames
from vaultkube.sync.errors import DirectiveError
from vaultkube.sync.models import SyncDirective, VaultItem

logger = logging.getLogger(__name__)

Extractor = Callable[[VaultItem], str | None]

_KEY_RE = re.compile(r"^[-._a-zA-Z0-9]+$")

# Legacy notes tags; not configurable
TAG_NAMESPACES = "namespaces"
TAG_SECRET_NAME = "secret-name"
TAG_USERNAME_KEY = "secret-key-username"
TAG_PASSWORD_KEY = "secret-key-password"
TAG_LEGACY_PASSWORD_KEY = "secret-key"
TAG_IGNORE = "ignore-field"


def custom_field(*names: str) -> Extractor:
    """Extractor for the first non-empty custom field matching any name (case-insensitive)."""
    wanted = [n.lower() for n in names if n]

    def extract(item: VaultItem) -> str | None:
        for name in wanted:
            for f in item.fields:
                if f.name.strip().lower() == name and f.value.strip():
                    return f.value.strip()
        return None

    return extract


def notes_tag(*tags: str) -> Extractor:
    """Extractor for the first non-empty ``#tag:`` line in the notes."""
    prefixes = [f"#{t.lower()}:" for t in tags]

    def extract(item: VaultItem) -> str | None:
        if not item.notes:
            return None
        for prefix in prefixes:
            for line in item.notes.splitlines():
                stripped = line.strip()
                if stripped.lower().startswith(prefix):
                    value = stripped[len(prefix):].strip()
                    if value:
                        return value
        return None

    return extract


def resolve(item: VaultItem, directive: str, chain: Sequence[Extractor]) -> str | None:
    """Run a fallback chain. Custom field precedence is logged when sources disagree."""
    values = [extract(item) for extract in chain]
    winner = next((v for v in values if v is not None), None)
    if winner is not None:
        for other in values:
            if other is not None and other != winner:
                logger.debug(
                    "Item %s: %s from custom field %r takes precedence over notes value %r",
                    item.id,
                    directive,
                    winner,
                    other,
                )
                break
    return winner


def split_list(raw: str | None) -> list[str]:
    """Comma-split, trim, drop empties, deduplicate in order."""
    if not raw:
        return []
    seen: list[str] = []
    for part in raw.split(","):
        part = part.strip()
        if part and part not in seen:
            seen.append(part)
    return seen


def parse_key_values(text: str | None) -> dict[str, str]:
    """Parse multi-line ``key=value`` / ``key: value`` text.

    The earliest ``=`` or ``:`` separates key from value. Lines without a
    separator or with an empty key are skipped.
    """
    result: dict[str, str] = {}
    if not text:
        return result
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        positions = [p for p in (line.find("="), line.find(":")) if p >= 0]
        if not positions:
            continue
        sep = min(positions)
        key = line[:sep].strip()
        if not key:
            continue
        result[key] = line[sep + 1 :].strip()
    return result


def _all_field_values(item: VaultItem, name: str) -> str | None:
    """Concatenate every custom field named ``name`` (multi-line directives)."""
    lowered = name.lower()
    values = [f.value for f in item.fields if f.name.strip().lower() == lowered and f.value.strip()]
    return "\n".join(values) if values else None


def _check_key(
    item: VaultItem,
    directive: str,
    value: str | None,
    namespaces: tuple[str, ...],
    secret_name: str | None,
) -> str | None:
    if value is None:
        return None
    if not _KEY_RE.match(value):
        raise DirectiveError(
            f"Item '{item.name}' ({item.id}): {directive} '{value}' contains characters "
            f"outside [-._a-zA-Z0-9]",
            namespaces=namespaces,
            secret_name=secret_name,
        )
    return value


def normalize(item: VaultItem, fields: FieldNames) -> SyncDirective | None:
    """Extract the SyncDirective for ``item``, or None if it is not synced.

    Raises DirectiveError when namespaces are present but another directive
    is unusable.
    """
    if item.is_deleted:
        return None

    namespaces = tuple(
        split_list(
            resolve(
                item,
                "namespaces",
                [custom_field(fields.namespaces), notes_tag(TAG_NAMESPACES)],
            )
        )
    )
    if not namespaces:
        return None

    secret_name = resolve(
        item,
        "secret-name",
        [custom_field(fields.secret_name), notes_tag(TAG_SECRET_NAME)],
    )
    username_key = resolve(
        item,
        "username key",
        [custom_field(fields.username_key), notes_tag(TAG_USERNAME_KEY)],
    )
    password_key = resolve(
        item,
        "password key",
        [
            custom_field(fields.password_key, fields.legacy_password_key),
            notes_tag(TAG_PASSWORD_KEY, TAG_LEGACY_PASSWORD_KEY),
        ],
    )
    ignore_raw = resolve(
        item,
        "ignore-field",
        [custom_field(fields.ignore), notes_tag(TAG_IGNORE)],
    )

    ignore = {name.lower() for name in split_list(ignore_raw)}
    ignore.update(n.lower() for n in (fields.ignore, fields.annotations, fields.labels))

    return SyncDirective(
        namespaces=namespaces,
        secret_name=secret_name,
        username_key=_check_key(item, "username key", username_key, namespaces, secret_name),
        password_key=_check_key(item, "password key", password_key, namespaces, secret_name),
        ignore=frozenset(ignore),
        annotations=parse_key_values(_all_field_values(item, fields.annotations)),
        labels=parse_key_values(_all_field_values(item, fields.labels)),
    )
