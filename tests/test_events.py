"""Tests for event broadcasting and the profile revalidation hook."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from tests.signing import WEBHOOK_SECRET
from usersync.app import create_app
from usersync.config import Settings
from usersync.events import EventBroadcaster, announce_sync, broadcaster, event_stream, revalidate_profile
from usersync.store import InMemoryUserStore, UserRecord


@pytest.fixture()
def subscription():
    sub_id, queue = broadcaster.subscribe()
    yield queue
    broadcaster.unsubscribe(sub_id)


def test_singleton():
    assert EventBroadcaster() is broadcaster


def test_revalidate_profile_broadcasts_path(subscription):
    revalidate_profile("user_1")
    event = subscription.get_nowait()
    assert event["type"] == "profile_revalidate"
    assert event["path"] == "/profile/user_1"
    assert "timestamp" in event


def test_announce_sync(subscription):
    announce_sync("user.updated", "user_1", "updated")
    event = subscription.get_nowait()
    assert event["type"] == "user_synced"
    assert event["external_id"] == "user_1"
    assert event["action"] == "updated"


def test_full_queue_drops_oldest():
    sub_id, queue = broadcaster.subscribe(maxsize=2)
    try:
        for i in range(3):
            broadcaster.broadcast({"type": "n", "i": i})
        assert [queue.get_nowait()["i"], queue.get_nowait()["i"]] == [1, 2]
    finally:
        broadcaster.unsubscribe(sub_id)


def test_broadcast_without_subscribers():
    count = broadcaster.subscriber_count
    revalidate_profile("user_2")  # does not raise
    assert broadcaster.subscriber_count == count


def test_subscriber_on_closed_loop_is_dropped():
    async def subscribe_only() -> str:
        return broadcaster.subscribe()[0]

    sub_id = asyncio.run(subscribe_only())
    assert sub_id in broadcaster._subscribers
    broadcaster.broadcast({"type": "n"})
    assert sub_id not in broadcaster._subscribers


class TestCrossThreadDelivery:
    """Store hooks run in the threadpool; subscribers live on the event loop."""

    def test_upsert_hook_in_worker_thread_wakes_subscriber(self, caplog):
        store = InMemoryUserStore(on_upsert=revalidate_profile)

        async def scenario() -> dict:
            sub_id, queue = broadcaster.subscribe()
            try:
                getter = asyncio.ensure_future(queue.get())
                await asyncio.sleep(0)
                loop = asyncio.get_running_loop()
                await loop.run_in_executor(None, store.upsert_by_key, UserRecord("user_t", username="t"))
                return await asyncio.wait_for(getter, 2)
            finally:
                broadcaster.unsubscribe(sub_id)

        event = asyncio.run(scenario(), debug=True)
        assert event["type"] == "profile_revalidate"
        assert event["path"] == "/profile/user_t"
        assert "Upsert hook failed" not in caplog.text

    def test_same_loop_delivery_is_immediate(self):
        async def scenario() -> int:
            sub_id, queue = broadcaster.subscribe()
            try:
                announce_sync("user.created", "user_1", "created")
                return queue.qsize()
            finally:
                broadcaster.unsubscribe(sub_id)

        assert asyncio.run(scenario()) == 1


class _Client:
    def __init__(self, disconnected: bool = False):
        self.disconnected = disconnected

    async def is_disconnected(self) -> bool:
        return self.disconnected


class TestEventStream:
    def test_keepalive_when_idle(self):
        async def scenario() -> str:
            stream = event_stream(_Client(), keepalive_seconds=0.01)
            try:
                return await stream.__anext__()
            finally:
                await stream.aclose()

        assert asyncio.run(scenario()) == ": keepalive\n\n"

    def test_disconnect_ends_stream_and_unsubscribes(self):
        count = broadcaster.subscriber_count

        async def scenario() -> list[str]:
            return [frame async for frame in event_stream(_Client(disconnected=True))]

        assert asyncio.run(scenario()) == []
        assert broadcaster.subscriber_count == count

    def test_update_delivery_reaches_stream(self, make_body, sign_headers, ada_data):
        app = create_app(Settings(webhook_secret=WEBHOOK_SECRET))
        body = make_body("user.updated", **ada_data)
        headers = {**sign_headers(body), "Content-Type": "application/json"}

        async def scenario():
            before = broadcaster.subscriber_count
            stream = event_stream(_Client())
            first = asyncio.ensure_future(stream.__anext__())
            while broadcaster.subscriber_count == before:
                await asyncio.sleep(0)

            transport = httpx.ASGITransport(app=app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                resp = await client.post("/api/webhook", content=body, headers=headers)

            frames = [await asyncio.wait_for(first, 2), await asyncio.wait_for(stream.__anext__(), 2)]
            await stream.aclose()
            return resp, frames

        resp, frames = asyncio.run(scenario(), debug=True)
        assert resp.status_code == 200

        events = {}
        for frame in frames:
            name_line, data_line = frame.strip().split("\n")
            events[name_line.removeprefix("event: ")] = json.loads(data_line.removeprefix("data: "))
        assert events["profile_revalidate"]["path"] == "/profile/user_ada"
        assert events["user_synced"]["action"] == "created"
