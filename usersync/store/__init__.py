"""User record stores: in-memory and Postgres."""

from usersync.store.memory import InMemoryUserStore
from usersync.store.models import UserRecord, UserStore
from usersync.store.postgres import PostgresUserStore

__all__ = ["InMemoryUserStore", "PostgresUserStore", "UserRecord", "UserStore"]
