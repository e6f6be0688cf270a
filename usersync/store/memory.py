"""In-memory user store.

Backs local runs and tests. One lock guards every operation, which gives
the same per-key atomicity the Postgres store gets from single-statement
upserts.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace

from usersync.store.models import UpsertHook, UserRecord, run_upsert_hook
from usersync.webhooks.errors import ConstraintViolationError

logger = logging.getLogger(__name__)


class InMemoryUserStore:
    """Dict-backed UserStore with a unique username index."""

    def __init__(self, on_upsert: UpsertHook | None = None):
        self._records: dict[str, UserRecord] = {}
        self._usernames: dict[str, str] = {}  # username -> external_id
        self._lock = threading.Lock()
        self._on_upsert = on_upsert

    def _check_username(self, record: UserRecord) -> None:
        owner = self._usernames.get(record.username)
        if owner is not None and owner != record.external_id:
            raise ConstraintViolationError(
                f"username already taken (key={record.external_id})"
            )

    def _put(self, record: UserRecord) -> None:
        previous = self._records.get(record.external_id)
        if previous is not None and previous.username != record.username:
            self._usernames.pop(previous.username, None)
        self._records[record.external_id] = replace(record)
        self._usernames[record.username] = record.external_id

    def get_by_key(self, external_id: str) -> UserRecord | None:
        with self._lock:
            record = self._records.get(external_id)
            return replace(record) if record is not None else None

    def create_by_key(self, record: UserRecord) -> bool:
        with self._lock:
            if record.external_id in self._records:
                return False
            self._check_username(record)
            self._put(record)
        logger.info("User created: %s", record.external_id)
        return True

    def upsert_by_key(self, record: UserRecord) -> bool:
        with self._lock:
            self._check_username(record)
            created = record.external_id not in self._records
            self._put(record)
        logger.info("User %s: %s", "created" if created else "updated", record.external_id)
        run_upsert_hook(self._on_upsert, record.external_id)
        return created

    def delete_by_key(self, external_id: str) -> bool:
        with self._lock:
            record = self._records.pop(external_id, None)
            if record is None:
                return False
            self._usernames.pop(record.username, None)
        logger.info("User deleted: %s", external_id)
        return True

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._records)
