"""Webhook event normalizer: maps verified Clerk payloads to user events.

The provider's ``data`` object is loosely typed JSON; it is validated on
entry with a pydantic model whose fields are all optional, and the missing
values are filled with the derivation rules below (first non-empty wins):

- username:  provider username (trimmed)
             -> lowercased first+last name
             -> random placeholder ``user<N>``
- name:      "<first> <last>" trimmed -> resolved username
- email:     first entry of email_addresses -> ``unknown@example.com``
- avatar:    image_url -> ""

Unrecognized event types map to UNHANDLED and are never an error.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from usersync.webhooks.errors import MalformedPayloadError
from usersync.webhooks.verification import VerifiedPayload

logger = logging.getLogger(__name__)

UNKNOWN_EMAIL = "unknown@example.com"

# Placeholder username suffix range; collisions are not checked
_PLACEHOLDER_MIN = 10_000
_PLACEHOLDER_MAX = 99_999_999


class EventKind(str, Enum):
    """Canonical user lifecycle event kinds."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNHANDLED = "unhandled"


# Clerk event type -> canonical kind
_EVENT_MAP: dict[str, EventKind] = {
    "user.created": EventKind.CREATED,
    "user.updated": EventKind.UPDATED,
    "user.deleted": EventKind.DELETED,
}


class ClerkEmailAddress(BaseModel):
    """One entry of a Clerk user's ``email_addresses`` list."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    email_address: str | None = None


class ClerkUserData(BaseModel):
    """The ``data`` object of a Clerk ``user.*`` event."""

    model_config = ConfigDict(extra="ignore")

    id: str | None = None
    username: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    image_url: str | None = None
    email_addresses: list[ClerkEmailAddress] = Field(default_factory=list)

    @field_validator("email_addresses", mode="before")
    @classmethod
    def _null_list(cls, value: Any) -> Any:
        return [] if value is None else value


@dataclass(frozen=True)
class CanonicalUserEvent:
    """Provider-independent user lifecycle event."""

    kind: EventKind
    external_id: str
    name: str = ""
    email: str = UNKNOWN_EMAIL
    username: str = ""
    avatar_url: str = ""
    event_type: str = ""
    message_id: str = ""


def _clean(value: str | None) -> str:
    return (value or "").strip()


def _placeholder_username() -> str:
    return f"user{random.randint(_PLACEHOLDER_MIN, _PLACEHOLDER_MAX)}"


def derive_username(username: str | None, first_name: str | None, last_name: str | None) -> str:
    """Resolve a username, never returning an empty string."""
    provided = _clean(username)
    if provided:
        return provided
    joined = f"{_clean(first_name)}{_clean(last_name)}".lower()
    if joined:
        return joined
    return _placeholder_username()


def derive_name(first_name: str | None, last_name: str | None, username: str) -> str:
    """Display name from first/last, falling back to the resolved username."""
    name = f"{_clean(first_name)} {_clean(last_name)}".strip()
    return name or username


def derive_email(email_addresses: list[ClerkEmailAddress]) -> str:
    if email_addresses:
        first = _clean(email_addresses[0].email_address)
        if first:
            return first
    return UNKNOWN_EMAIL


def event_kind(event_type: str) -> EventKind:
    return _EVENT_MAP.get(event_type, EventKind.UNHANDLED)


def normalize(payload: VerifiedPayload) -> CanonicalUserEvent:
    """Map a verified payload to a CanonicalUserEvent.

    Args:
        payload: Output of WebhookVerifier.verify()

    Returns:
        CanonicalUserEvent with every derived field filled in

    Raises:
        MalformedPayloadError: the data object fails validation, or the user
            id is missing on a created/updated/deleted event
    """
    kind = event_kind(payload.event_type)

    raw: Any = payload.body.get("data")
    if raw is None:
        raw = {}
    try:
        data = ClerkUserData.model_validate(raw)
    except ValidationError as e:
        if kind is EventKind.UNHANDLED:
            logger.info("Unhandled webhook event %s has unparseable data", payload.event_type)
            return CanonicalUserEvent(
                kind=kind,
                external_id="",
                username=_placeholder_username(),
                event_type=payload.event_type,
                message_id=payload.message_id,
            )
        raise MalformedPayloadError(
            f"Invalid user data for {payload.event_type}: {e.error_count()} error(s)"
        ) from e

    external_id = _clean(data.id)
    if kind is not EventKind.UNHANDLED and not external_id:
        raise MalformedPayloadError(f"Missing user id for {payload.event_type}")

    username = derive_username(data.username, data.first_name, data.last_name)
    return CanonicalUserEvent(
        kind=kind,
        external_id=external_id,
        name=derive_name(data.first_name, data.last_name, username),
        email=derive_email(data.email_addresses),
        username=username,
        avatar_url=_clean(data.image_url),
        event_type=payload.event_type,
        message_id=payload.message_id,
    )
