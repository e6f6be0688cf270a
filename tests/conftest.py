"""Shared fixtures for the usersync test suite."""

from __future__ import annotations

import json
import time
from typing import Any

import pytest

from tests.signing import WEBHOOK_SECRET, compute_signature


@pytest.fixture()
def webhook_secret() -> str:
    return WEBHOOK_SECRET


@pytest.fixture()
def sign_headers():
    """Factory for a valid svix-* header triplet.

    Returns a headers dict for (body, message_id, timestamp); timestamp
    defaults to now.
    """

    def _sign(body: bytes, message_id: str = "msg_test_1", timestamp: int | None = None) -> dict[str, str]:
        ts = int(time.time()) if timestamp is None else timestamp
        return {
            "svix-id": message_id,
            "svix-timestamp": str(ts),
            "svix-signature": compute_signature(message_id, ts, body),
        }

    return _sign


@pytest.fixture()
def make_body():
    """Factory for a Clerk event body as raw JSON bytes."""

    def _make(event_type: str = "user.created", **data: Any) -> bytes:
        return json.dumps({"type": event_type, "object": "event", "data": data}).encode()

    return _make


@pytest.fixture()
def ada_data() -> dict[str, Any]:
    return {
        "id": "user_ada",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "username": None,
        "image_url": "https://img.example.com/ada.png",
        "email_addresses": [
            {"id": "idn_1", "email_address": "ada@example.com"},
            {"id": "idn_2", "email_address": "ada@work.example.com"},
        ],
    }
