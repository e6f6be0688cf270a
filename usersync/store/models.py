"""User record model and the store protocol consumed by the synchronizer.

Store contract:
- Records are keyed uniquely by external_id (the provider's user id)
- username is unique across records; a clash raises ConstraintViolationError
- Each operation is atomic for its key (concurrent deliveries for one user
  are serialized by the store, not by the caller)
- Connectivity failures raise TransientStoreError
- upsert_by_key runs the store's on_upsert hook after a successful write;
  hook failures are logged and never fail the write
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

UpsertHook = Callable[[str], None]


@dataclass
class UserRecord:
    """A locally persisted mirror of a provider user."""

    external_id: str
    name: str = ""
    email: str = ""
    username: str = ""
    avatar_url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@runtime_checkable
class UserStore(Protocol):
    """Persistent store collaborator used by UserSynchronizer."""

    def get_by_key(self, external_id: str) -> UserRecord | None:
        """Return the record for external_id, or None."""
        ...

    def create_by_key(self, record: UserRecord) -> bool:
        """Insert record if no record exists for its key.

        Returns True if inserted, False if a record already existed (the
        existing record is left untouched).
        """
        ...

    def upsert_by_key(self, record: UserRecord) -> bool:
        """Update the record for its key, creating it when absent.

        Returns True if a new record was inserted, False if updated.
        """
        ...

    def delete_by_key(self, external_id: str) -> bool:
        """Remove the record for external_id.

        Returns True if a record was removed, False if none existed.
        """
        ...


def run_upsert_hook(hook: UpsertHook | None, external_id: str) -> None:
    """Run a best-effort post-upsert hook (cache / page revalidation)."""
    if hook is None:
        return
    try:
        hook(external_id)
    except Exception:
        logger.warning("Upsert hook failed for %s", external_id, exc_info=True)
