"""
Selective-sync events received from the vault webhook.

created/updated/restored are scoped to the item; deleted/moved/shared cannot
be scoped safely and trigger a full sync.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

SIGNATURE_HEADER = "X-Webhook-Signature"


class EventKind(StrEnum):
    ITEM_CREATED = "item.created"
    ITEM_UPDATED = "item.updated"
    ITEM_DELETED = "item.deleted"
    ITEM_RESTORED = "item.restored"
    ITEM_MOVED = "item.moved"
    ITEM_SHARED = "item.shared"


FULL_SYNC_EVENTS = frozenset({EventKind.ITEM_DELETED, EventKind.ITEM_MOVED, EventKind.ITEM_SHARED})


class EventData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    item_name: str | None = Field(default=None, alias="itemName")
    item_type: int | None = Field(default=None, alias="itemType")
    affected_namespaces: list[str] = Field(default_factory=list, alias="affectedNamespaces")


class WebhookEvent(BaseModel):
    """Vault webhook payload (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    event_type: EventKind = Field(alias="eventType")
    item_id: str = Field(default="", alias="itemId")
    timestamp: datetime | None = None
    organization_id: str | None = Field(default=None, alias="organizationId")
    collection_id: str | None = Field(default=None, alias="collectionId")
    user_id: str | None = Field(default=None, alias="userId")
    data: EventData = Field(default_factory=EventData)

    @property
    def requires_full_sync(self) -> bool:
        return self.event_type in FULL_SYNC_EVENTS or not self.item_id

    @property
    def namespaces(self) -> tuple[str, ...]:
        return tuple(n.strip() for n in self.data.affected_namespaces if n.strip())


def sign(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def validate_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    """HMAC-SHA256 check. No configured secret means validation is off."""
    if not secret:
        return True
    if not signature:
        return False
    signature = signature.strip()
    if signature.lower().startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(sign(payload, secret), signature.lower())
