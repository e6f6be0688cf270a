"""Process configuration, read from the environment (and a .env file).

The webhook secret is read here once and handed to the verifier; request
handling never touches os.environ.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from usersync.webhooks.errors import ConfigurationError
from usersync.webhooks.idempotency import DEFAULT_DEDUP_TTL_SECONDS
from usersync.webhooks.verification import DEFAULT_TOLERANCE_SECONDS

logger = logging.getLogger(__name__)

STORE_BACKENDS = ("memory", "postgres")


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name, "")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the webhook receiver."""

    webhook_secret: str = ""
    tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS
    database_url: str = ""
    store_backend: str = "memory"
    redis_url: str = ""
    dedup_ttl_seconds: int = DEFAULT_DEDUP_TTL_SECONDS
    rate_limit: str = "600/minute"
    log_level: str = "INFO"
    events_token: str = ""

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None, dotenv_path: str | Path | None = None) -> Settings:
        """Build settings from environment variables.

        When env is None, a .env file (dotenv_path, or one found from the
        working directory) is loaded into os.environ first; variables already
        set in the process win.
        """
        if env is None:
            load_dotenv(dotenv_path)
            env = os.environ

        database_url = env.get("DATABASE_URL", "")
        store_backend = (env.get("USER_STORE") or ("postgres" if database_url else "memory")).lower()
        if store_backend not in STORE_BACKENDS:
            raise ConfigurationError(
                f"USER_STORE must be one of {', '.join(STORE_BACKENDS)}, got {store_backend!r}"
            )
        if store_backend == "postgres" and not database_url:
            raise ConfigurationError("USER_STORE=postgres requires DATABASE_URL")

        settings = cls(
            webhook_secret=env.get("WEBHOOK_SECRET", ""),
            tolerance_seconds=_int_env(env, "WEBHOOK_TOLERANCE_SECONDS", DEFAULT_TOLERANCE_SECONDS),
            database_url=database_url,
            store_backend=store_backend,
            redis_url=env.get("REDIS_URL", ""),
            dedup_ttl_seconds=_int_env(env, "WEBHOOK_DEDUP_TTL_SECONDS", DEFAULT_DEDUP_TTL_SECONDS),
            rate_limit=env.get("WEBHOOK_RATE_LIMIT", "") or "600/minute",
            log_level=(env.get("LOG_LEVEL", "") or "INFO").upper(),
            events_token=env.get("EVENTS_TOKEN", ""),
        )
        if not settings.webhook_secret:
            logger.warning("WEBHOOK_SECRET is not set, every webhook will be rejected")
        return settings

    @property
    def dedup_enabled(self) -> bool:
        return bool(self.redis_url)
