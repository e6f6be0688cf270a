"""Event broadcasting for user sync notifications.

Provides:
- EventBroadcaster: fan-out of dict events to in-process subscribers
- event_stream: Server-Sent Events consumer of the broadcaster (GET /events)
- revalidate_profile: store upsert hook that announces a stale profile page
- announce_sync: notification after a webhook has been applied

Broadcasting never blocks: a full subscriber queue drops its oldest event.
Each subscriber remembers the event loop it subscribed on; events published
from any other thread (store hooks run in the threadpool) are handed to that
loop with call_soon_threadsafe.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from collections.abc import AsyncIterator
from typing import Any

from starlette.requests import Request

logger = logging.getLogger(__name__)

PROFILE_PATH = "/profile/{external_id}"

SSE_KEEPALIVE_SECONDS = 15.0


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _put_drop_oldest(queue: asyncio.Queue, event: dict[str, Any]) -> None:
    try:
        queue.put_nowait(event)
    except asyncio.QueueFull:
        try:
            queue.get_nowait()
            queue.put_nowait(event)
        except (asyncio.QueueEmpty, asyncio.QueueFull):
            pass


class EventBroadcaster:
    """Singleton that fans out events to all subscribers."""

    _instance: EventBroadcaster | None = None

    def __new__(cls) -> EventBroadcaster:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._subscribers: dict[str, tuple[asyncio.Queue, asyncio.AbstractEventLoop | None]] = {}
        return cls._instance

    def subscribe(self, maxsize: int = 500) -> tuple[str, asyncio.Queue]:
        """Register a new subscriber. Returns (subscriber_id, queue).

        Called from a coroutine, the queue is bound to the running loop and
        may be fed from any thread.
        """
        sub_id = str(uuid.uuid4())[:8]
        queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._subscribers[sub_id] = (queue, _running_loop())
        logger.info("Event subscriber connected: %s (total: %d)", sub_id, len(self._subscribers))
        return sub_id, queue

    def unsubscribe(self, sub_id: str) -> None:
        """Remove a subscriber."""
        self._subscribers.pop(sub_id, None)
        logger.info("Event subscriber disconnected: %s (total: %d)", sub_id, len(self._subscribers))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def broadcast(self, event: dict[str, Any]) -> None:
        """Send an event to all subscribers (non-blocking, any thread)."""
        event["timestamp"] = time.time()
        current = _running_loop()
        for sub_id, (queue, loop) in list(self._subscribers.items()):
            if loop is None or loop is current:
                _put_drop_oldest(queue, event)
            elif loop.is_closed():
                # Subscriber's loop is gone, nothing can read this queue
                self.unsubscribe(sub_id)
            else:
                loop.call_soon_threadsafe(_put_drop_oldest, queue, event)


# Global singleton
broadcaster = EventBroadcaster()


def _format_sse(event: dict[str, Any]) -> str:
    return f"event: {event.get('type', 'message')}\ndata: {json.dumps(event)}\n\n"


async def event_stream(
    request: Request,
    keepalive_seconds: float = SSE_KEEPALIVE_SECONDS,
) -> AsyncIterator[str]:
    """Yield broadcaster events as SSE frames until the client disconnects.

    A comment frame is sent after keepalive_seconds without events so
    proxies keep the connection open.
    """
    sub_id, queue = broadcaster.subscribe()
    try:
        while not await request.is_disconnected():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive_seconds)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            yield _format_sse(event)
    finally:
        broadcaster.unsubscribe(sub_id)


def revalidate_profile(external_id: str) -> None:
    """Upsert hook: mark the user's profile page stale."""
    broadcaster.broadcast(
        {
            "type": "profile_revalidate",
            "external_id": external_id,
            "path": PROFILE_PATH.format(external_id=external_id),
        }
    )


def announce_sync(event_type: str, external_id: str, action: str) -> None:
    broadcaster.broadcast(
        {
            "type": "user_synced",
            "event_type": event_type,
            "external_id": external_id,
            "action": action,
        }
    )
