"""Tests for Clerk payload normalization.

Tests:
- Event type -> kind mapping (unknown types are UNHANDLED, not errors)
- Username / name / email / avatar derivation chain
- Required external id for created/updated/deleted
- Property: derived username is never empty
"""

from __future__ import annotations

import re
from unittest.mock import patch

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from usersync.webhooks.errors import MalformedPayloadError
from usersync.webhooks.normalizer import (
    UNKNOWN_EMAIL,
    CanonicalUserEvent,
    EventKind,
    derive_name,
    derive_username,
    event_kind,
    normalize,
)
from usersync.webhooks.verification import VerifiedPayload

PLACEHOLDER = re.compile(r"^user\d+$")


def _payload(event_type: str = "user.created", data=None, message_id: str = "msg_1") -> VerifiedPayload:
    body = {"type": event_type, "object": "event"}
    if data is not None:
        body["data"] = data
    return VerifiedPayload(message_id=message_id, event_type=event_type, body=body)


# ── Event kinds ───────────────────────────────────────────────────────────


class TestEventKind:
    @pytest.mark.parametrize(
        "event_type, kind",
        [
            ("user.created", EventKind.CREATED),
            ("user.updated", EventKind.UPDATED),
            ("user.deleted", EventKind.DELETED),
            ("session.created", EventKind.UNHANDLED),
            ("organization.created", EventKind.UNHANDLED),
            ("", EventKind.UNHANDLED),
        ],
    )
    def test_mapping(self, event_type, kind):
        assert event_kind(event_type) is kind

    def test_unhandled_without_data_is_not_an_error(self):
        event = normalize(_payload("email.created"))
        assert event.kind is EventKind.UNHANDLED
        assert event.external_id == ""
        assert event.username

    def test_unhandled_with_unparseable_data(self):
        event = normalize(_payload("session.ended", data=["not", "an", "object"]))
        assert event.kind is EventKind.UNHANDLED
        assert event.event_type == "session.ended"


# ── Derivation chain ──────────────────────────────────────────────────────


class TestUsername:
    def test_provider_username_wins(self):
        assert derive_username("  ada_l  ", "Ada", "Lovelace") == "ada_l"

    def test_first_last_fallback(self):
        assert derive_username(None, "Ada", "Lovelace") == "adalovelace"

    def test_blank_username_falls_back(self):
        assert derive_username("   ", "Ada", "Lovelace") == "adalovelace"

    def test_first_name_only(self):
        assert derive_username("", " Grace ", None) == "grace"

    def test_placeholder_when_everything_empty(self):
        assert PLACEHOLDER.match(derive_username(None, None, None))

    @patch("usersync.webhooks.normalizer.random.randint", return_value=424242)
    def test_placeholder_uses_random_suffix(self, mock_randint):
        assert derive_username("", "", "") == "user424242"
        low, high = mock_randint.call_args[0]
        assert high - low > 1_000_000  # wide range

    @given(
        username=st.one_of(st.none(), st.text(max_size=20)),
        first=st.one_of(st.none(), st.text(max_size=20)),
        last=st.one_of(st.none(), st.text(max_size=20)),
    )
    @settings(max_examples=200)
    def test_never_empty(self, username, first, last):
        """Property: the fallback chain always yields a non-empty username."""
        result = derive_username(username, first, last)
        assert result
        if username and username.strip():
            assert result == username.strip()


class TestName:
    def test_first_and_last(self):
        assert derive_name("Ada", "Lovelace", "x") == "Ada Lovelace"

    def test_single_part_trimmed(self):
        assert derive_name("Ada", None, "x") == "Ada"
        assert derive_name(None, "Lovelace", "x") == "Lovelace"

    def test_falls_back_to_username(self):
        assert derive_name("  ", None, "user123") == "user123"

    @given(first=st.text(max_size=10), last=st.text(max_size=10))
    def test_name_is_never_empty_given_username(self, first, last):
        assert derive_name(first, last, "fallback")


# ── normalize() ───────────────────────────────────────────────────────────


class TestNormalize:
    def test_full_payload(self, ada_data):
        event = normalize(_payload("user.created", ada_data, message_id="msg_42"))
        assert event == CanonicalUserEvent(
            kind=EventKind.CREATED,
            external_id="user_ada",
            name="Ada Lovelace",
            email="ada@example.com",
            username="adalovelace",
            avatar_url="https://img.example.com/ada.png",
            event_type="user.created",
            message_id="msg_42",
        )

    def test_provider_username_used(self, ada_data):
        ada_data["username"] = "countess"
        event = normalize(_payload("user.updated", ada_data))
        assert event.kind is EventKind.UPDATED
        assert event.username == "countess"
        assert event.name == "Ada Lovelace"

    def test_empty_names_and_username(self):
        event = normalize(_payload("user.created", {"id": "user_x"}))
        assert PLACEHOLDER.match(event.username)
        assert event.name == event.username

    def test_email_defaults_to_sentinel(self):
        event = normalize(_payload("user.created", {"id": "user_x", "email_addresses": []}))
        assert event.email == UNKNOWN_EMAIL == "unknown@example.com"

    def test_null_email_list(self):
        event = normalize(_payload("user.created", {"id": "user_x", "email_addresses": None}))
        assert event.email == UNKNOWN_EMAIL

    def test_first_email_entry_used(self):
        data = {
            "id": "user_x",
            "email_addresses": [{"email_address": "first@x.com"}, {"email_address": "second@x.com"}],
        }
        assert normalize(_payload("user.created", data)).email == "first@x.com"

    def test_avatar_defaults_to_empty(self):
        event = normalize(_payload("user.created", {"id": "user_x", "image_url": None}))
        assert event.avatar_url == ""

    def test_unknown_fields_ignored(self):
        data = {"id": "user_x", "public_metadata": {"role": "admin"}, "two_factor_enabled": True}
        assert normalize(_payload("user.created", data)).external_id == "user_x"

    def test_deleted_with_only_id(self):
        event = normalize(_payload("user.deleted", {"id": "user_x", "deleted": True, "object": "user"}))
        assert event.kind is EventKind.DELETED
        assert event.external_id == "user_x"

    @pytest.mark.parametrize("event_type", ["user.created", "user.updated", "user.deleted"])
    @pytest.mark.parametrize("data", [None, {}, {"id": ""}, {"id": "   "}, {"id": None}])
    def test_missing_id_is_malformed(self, event_type, data):
        with pytest.raises(MalformedPayloadError):
            normalize(_payload(event_type, data))

    def test_wrong_field_type_is_malformed(self):
        with pytest.raises(MalformedPayloadError):
            normalize(_payload("user.created", {"id": "user_x", "email_addresses": "a@x.com"}))

    def test_data_not_an_object_is_malformed(self):
        with pytest.raises(MalformedPayloadError):
            normalize(_payload("user.updated", ["user_x"]))

    def test_two_letter_names(self):
        data = {"id": "u1", "first_name": "A", "last_name": "B", "email_addresses": [{"email_address": "a@x.com"}]}
        event = normalize(_payload("user.created", data))
        assert (event.external_id, event.name, event.email, event.username) == ("u1", "A B", "a@x.com", "ab")
