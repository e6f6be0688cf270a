"""User synchronizer: applies canonical events to the user store.

Idempotency contract (per external_id):
- created:   insert if absent. A record that already exists is left as is
             (duplicate delivery, or an earlier out-of-order update).
- updated:   upsert. Creates the record if the created event hasn't
             arrived yet.
- deleted:   remove if present. Deleting an absent key is a success.
- unhandled: no store call, success.

Exactly one store mutation per event (none for unhandled). Store errors
(TransientStoreError, ConstraintViolationError) propagate unchanged so the
provider's redelivery can retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from usersync.store.models import UserRecord, UserStore
from usersync.webhooks.normalizer import CanonicalUserEvent, EventKind

logger = logging.getLogger(__name__)


class SyncAction(str, Enum):
    """What the store did for one event."""

    CREATED = "created"
    UPDATED = "updated"
    DUPLICATE = "duplicate"  # created event for an existing key, no-op
    DELETED = "deleted"
    ABSENT = "absent"  # deleted event for a missing key, no-op
    IGNORED = "ignored"  # unhandled event kind


@dataclass
class SyncResult:
    """Outcome of applying one event."""

    action: SyncAction
    external_id: str
    record: UserRecord | None = None

    @property
    def mutated(self) -> bool:
        return self.action in (SyncAction.CREATED, SyncAction.UPDATED, SyncAction.DELETED)

    def as_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "external_id": self.external_id,
        }


def to_record(event: CanonicalUserEvent) -> UserRecord:
    return UserRecord(
        external_id=event.external_id,
        name=event.name,
        email=event.email,
        username=event.username,
        avatar_url=event.avatar_url,
    )


class UserSynchronizer:
    """Dispatches canonical events to the store by kind."""

    def __init__(self, store: UserStore):
        self._store = store

    def apply(self, event: CanonicalUserEvent) -> SyncResult:
        if event.kind is EventKind.CREATED:
            return self._apply_created(event)
        if event.kind is EventKind.UPDATED:
            return self._apply_updated(event)
        if event.kind is EventKind.DELETED:
            return self._apply_deleted(event)

        logger.info("Ignoring unhandled event type: %s", event.event_type or "unknown")
        return SyncResult(action=SyncAction.IGNORED, external_id=event.external_id)

    def _apply_created(self, event: CanonicalUserEvent) -> SyncResult:
        record = to_record(event)
        if self._store.create_by_key(record):
            return SyncResult(SyncAction.CREATED, event.external_id, record)
        logger.info("User %s already exists, created event ignored", event.external_id)
        return SyncResult(SyncAction.DUPLICATE, event.external_id)

    def _apply_updated(self, event: CanonicalUserEvent) -> SyncResult:
        record = to_record(event)
        created = self._store.upsert_by_key(record)
        if created:
            logger.info("User %s updated before it was created, inserted", event.external_id)
        action = SyncAction.CREATED if created else SyncAction.UPDATED
        return SyncResult(action, event.external_id, record)

    def _apply_deleted(self, event: CanonicalUserEvent) -> SyncResult:
        if self._store.delete_by_key(event.external_id):
            return SyncResult(SyncAction.DELETED, event.external_id)
        logger.info("User %s not found, delete is a no-op", event.external_id)
        return SyncResult(SyncAction.ABSENT, event.external_id)
