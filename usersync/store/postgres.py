"""Postgres user store (psycopg 3).

Every operation is a single statement on an autocommit connection, so
per-key atomicity comes from Postgres itself:
- create_by_key:  INSERT ... ON CONFLICT (external_id) DO NOTHING
- upsert_by_key:  INSERT ... ON CONFLICT (external_id) DO UPDATE
- delete_by_key:  DELETE ... RETURNING

Error mapping:
- UniqueViolation (username taken by another key) -> ConstraintViolationError
- OperationalError / InterfaceError (connect, timeout) -> TransientStoreError
- any other psycopg.Error (bad data, other integrity errors) -> SyncError
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator

import psycopg
from psycopg.rows import dict_row

from usersync.store.models import UpsertHook, UserRecord, run_upsert_hook
from usersync.webhooks.errors import ConstraintViolationError, SyncError, TransientStoreError

logger = logging.getLogger(__name__)

TABLE_NAME = "sync_users"

_CREATE_TABLE_SQL = f"""
    CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
        external_id  TEXT PRIMARY KEY,
        name         TEXT NOT NULL DEFAULT '',
        email        TEXT NOT NULL DEFAULT '',
        username     TEXT NOT NULL UNIQUE,
        avatar_url   TEXT NOT NULL DEFAULT '',
        created_at   TIMESTAMPTZ DEFAULT now(),
        updated_at   TIMESTAMPTZ DEFAULT now()
    )
"""

_SELECT_SQL = f"""SELECT external_id, name, email, username, avatar_url
    FROM {TABLE_NAME} WHERE external_id = %s"""

_CREATE_SQL = f"""INSERT INTO {TABLE_NAME}
    (external_id, name, email, username, avatar_url)
    VALUES (%s, %s, %s, %s, %s)
    ON CONFLICT (external_id) DO NOTHING
    RETURNING external_id"""

_UPSERT_SQL = f"""INSERT INTO {TABLE_NAME}
    (external_id, name, email, username, avatar_url)
    VALUES (%s, %s, %s, %s, %s)
    ON CONFLICT (external_id) DO UPDATE SET
        name = EXCLUDED.name,
        email = EXCLUDED.email,
        username = EXCLUDED.username,
        avatar_url = EXCLUDED.avatar_url,
        updated_at = now()
    RETURNING (xmax = 0) AS inserted"""

_DELETE_SQL = f"DELETE FROM {TABLE_NAME} WHERE external_id = %s RETURNING external_id"


@contextlib.contextmanager
def _translate_errors(operation: str, external_id: str) -> Iterator[None]:
    try:
        yield
    except psycopg.errors.UniqueViolation as e:
        logger.warning("%s rejected for %s: unique constraint", operation, external_id)
        raise ConstraintViolationError(
            f"{operation} violates a unique constraint (key={external_id})"
        ) from e
    except (psycopg.OperationalError, psycopg.InterfaceError) as e:
        logger.error("%s failed for %s: store unavailable", operation, external_id)
        raise TransientStoreError(f"{operation} failed: store unavailable") from e
    except psycopg.Error as e:
        logger.error("%s failed for %s: %s", operation, external_id, type(e).__name__)
        raise SyncError(f"{operation} failed: {type(e).__name__}") from e


def _params(record: UserRecord) -> tuple[str, str, str, str, str]:
    return (
        record.external_id,
        record.name,
        record.email,
        record.username,
        record.avatar_url,
    )


class PostgresUserStore:
    """UserStore backed by the ``sync_users`` table."""

    def __init__(self, dsn: str, on_upsert: UpsertHook | None = None):
        self._dsn = dsn
        self._on_upsert = on_upsert

    def _get_conn(self) -> psycopg.Connection:
        return psycopg.connect(self._dsn, autocommit=True, row_factory=dict_row)

    def init_tables(self) -> None:
        """Create the users table if it doesn't exist.  Idempotent."""
        with _translate_errors("init_tables", "-"):
            with self._get_conn() as conn:
                conn.execute(_CREATE_TABLE_SQL)
        logger.info("User sync table initialized")

    def get_by_key(self, external_id: str) -> UserRecord | None:
        with _translate_errors("get", external_id):
            with self._get_conn() as conn:
                row = conn.execute(_SELECT_SQL, (external_id,)).fetchone()
        if not row:
            return None
        return UserRecord(
            external_id=row["external_id"],
            name=row["name"],
            email=row["email"],
            username=row["username"],
            avatar_url=row["avatar_url"],
        )

    def create_by_key(self, record: UserRecord) -> bool:
        with _translate_errors("create", record.external_id):
            with self._get_conn() as conn:
                row = conn.execute(_CREATE_SQL, _params(record)).fetchone()
        created = row is not None
        if created:
            logger.info("User created: %s", record.external_id)
        return created

    def upsert_by_key(self, record: UserRecord) -> bool:
        with _translate_errors("upsert", record.external_id):
            with self._get_conn() as conn:
                row = conn.execute(_UPSERT_SQL, _params(record)).fetchone()
        created = bool(row and row["inserted"])
        logger.info("User %s: %s", "created" if created else "updated", record.external_id)
        run_upsert_hook(self._on_upsert, record.external_id)
        return created

    def delete_by_key(self, external_id: str) -> bool:
        with _translate_errors("delete", external_id):
            with self._get_conn() as conn:
                row = conn.execute(_DELETE_SQL, (external_id,)).fetchone()
        deleted = row is not None
        if deleted:
            logger.info("User deleted: %s", external_id)
        return deleted
