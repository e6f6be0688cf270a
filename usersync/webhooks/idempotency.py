"""Webhook idempotency: Redis-based deduplication by delivery message id.

Security contract:
- Tracks message ids in Redis with 24h TTL
- Duplicate deliveries are acknowledged with 200 (provider retries on errors)
- Key pattern: webhook:seen:{provider}:{message_id}
- A claim is released when processing fails, so the redelivery is processed
- If Redis is down, falls back to allowing (fail-open for availability);
  store operations are idempotent per key, so a missed dedup is harmless
"""

from __future__ import annotations

import logging

import redis

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_TTL_SECONDS = 86400  # 24 hours

# Connect and per-command timeout; a slow Redis fails open instead of stalling
REDIS_TIMEOUT_SECONDS = 2.0

# Key prefix for webhook dedup
_KEY_PREFIX = "webhook:seen"


class DeliveryDeduplicator:
    """Claims delivery message ids in Redis with SET NX EX."""

    def __init__(
        self,
        redis_url: str,
        ttl_seconds: int = DEFAULT_DEDUP_TTL_SECONDS,
        provider: str = "clerk",
        timeout_seconds: float = REDIS_TIMEOUT_SECONDS,
    ):
        self._redis_url = redis_url
        self._ttl = ttl_seconds
        self._provider = provider
        self._timeout = timeout_seconds
        self._client: redis.Redis | None = None

    def _get_redis(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self._redis_url,
                decode_responses=True,
                socket_connect_timeout=self._timeout,
                socket_timeout=self._timeout,
            )
        return self._client

    def _key(self, message_id: str) -> str:
        return f"{_KEY_PREFIX}:{self._provider}:{message_id}"

    def is_duplicate(self, message_id: str) -> bool:
        """Atomically claim message_id; True if it was already claimed.

        Args:
            message_id: Unique delivery id from the provider

        Returns:
            True if this delivery has already been seen (duplicate)
        """
        if not message_id:
            return False  # No ID = can't dedup, allow through

        try:
            # SET NX returns True if key was set (new), None if it already existed
            was_set = self._get_redis().set(self._key(message_id), "1", nx=True, ex=self._ttl)
            if not was_set:
                logger.info("Duplicate webhook rejected: %s/%s", self._provider, message_id)
                return True
            return False
        except redis.RedisError:
            logger.warning(
                "Redis unavailable for webhook dedup, allowing %s/%s",
                self._provider,
                message_id,
                exc_info=True,
            )
            return False

    def release(self, message_id: str) -> None:
        """Forget a claim so a redelivery of message_id is processed."""
        if not message_id:
            return
        try:
            self._get_redis().delete(self._key(message_id))
        except redis.RedisError:
            logger.warning("Failed to release webhook claim: %s/%s", self._provider, message_id)
