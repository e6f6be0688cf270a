"""Webhook signature verification: Svix scheme, constant-time HMAC.

Security contract:
- All comparisons use hmac.compare_digest() (constant-time, no timing attacks)
- Missing secret -> MissingSecretError (server misconfiguration, fail-closed)
- Missing id/timestamp/signature header -> MissingHeadersError
- Signature mismatch and stale/future timestamp both -> InvalidSignatureError
- Timestamp tolerance: 300s (5 min) in either direction to prevent replay
- The body is not parsed until the signature has been verified
- Neither the secret nor signature values are ever logged
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from usersync.webhooks.errors import (
    ConfigurationError,
    InvalidSignatureError,
    MalformedPayloadError,
    MissingHeadersError,
    MissingSecretError,
)

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE_SECONDS = 300

_SECRET_PREFIX = "whsec_"
_SIGNATURE_VERSION = "v1"

# (id, timestamp, signature); branded Svix names first, unbranded aliases second
_HEADER_NAMES: tuple[tuple[str, str, str], ...] = (
    ("svix-id", "svix-timestamp", "svix-signature"),
    ("webhook-id", "webhook-timestamp", "webhook-signature"),
)


@dataclass
class VerifiedPayload:
    """A delivery whose signature and freshness have been checked."""

    message_id: str
    event_type: str
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def data(self) -> dict[str, Any]:
        data = self.body.get("data")
        return data if isinstance(data, dict) else {}


def extract_signature_headers(headers: Mapping[str, str]) -> tuple[str, str, str]:
    """Pull the (id, timestamp, signature) triplet out of request headers.

    Header lookup is case-insensitive. Raises MissingHeadersError when any of
    the three values is absent or empty.
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    for id_name, ts_name, sig_name in _HEADER_NAMES:
        values = (
            (lowered.get(id_name) or "").strip(),
            (lowered.get(ts_name) or "").strip(),
            (lowered.get(sig_name) or "").strip(),
        )
        if any(values):
            if not all(values):
                raise MissingHeadersError("Incomplete webhook signature headers")
            return values
    raise MissingHeadersError("Missing webhook signature headers")


def _decode_secret(secret: str) -> bytes:
    raw = secret[len(_SECRET_PREFIX):] if secret.startswith(_SECRET_PREFIX) else secret
    try:
        return base64.b64decode(raw, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError("Webhook secret is not valid base64") from e


class WebhookVerifier:
    """Verifies Svix-signed deliveries against one trust key.

    The secret is injected once at construction. An empty secret is accepted
    here and surfaces as MissingSecretError on the first verify() call.
    """

    def __init__(self, secret: str, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS) -> None:
        self._secret = secret or ""
        self._tolerance = tolerance_seconds
        self._key: bytes | None = None

    @property
    def tolerance_seconds(self) -> int:
        return self._tolerance

    def _signing_key(self) -> bytes:
        if not self._secret:
            logger.error("WEBHOOK_SECRET not set, rejecting webhook")
            raise MissingSecretError("Webhook secret is not configured")
        if self._key is None:
            self._key = _decode_secret(self._secret)
        return self._key

    def sign(self, message_id: str, timestamp: int | str, body: bytes) -> str:
        """Compute the ``v1,<base64>`` signature for a delivery."""
        signed_content = f"{message_id}.{timestamp}.".encode("utf-8") + body
        digest = hmac.new(self._signing_key(), signed_content, hashlib.sha256).digest()
        return f"{_SIGNATURE_VERSION},{base64.b64encode(digest).decode('utf-8')}"

    def _check_timestamp(self, timestamp_str: str) -> int:
        try:
            timestamp = int(timestamp_str)
        except (TypeError, ValueError):
            logger.warning("Webhook timestamp is not an integer")
            raise InvalidSignatureError("Invalid signature") from None

        now = time.time()
        if timestamp < now - self._tolerance:
            logger.warning("Webhook timestamp too old: %s", timestamp)
            raise InvalidSignatureError("Invalid signature")
        if timestamp > now + self._tolerance:
            logger.warning("Webhook timestamp too new: %s", timestamp)
            raise InvalidSignatureError("Invalid signature")
        return timestamp

    def verify(self, body: bytes, headers: Mapping[str, str]) -> VerifiedPayload:
        """Verify a raw delivery and return its parsed payload.

        Args:
            body: Raw request body bytes, exactly as received
            headers: Request headers (any case)

        Returns:
            VerifiedPayload with the parsed JSON body

        Raises:
            MissingSecretError: no secret configured
            MissingHeadersError: id, timestamp or signature header absent
            InvalidSignatureError: signature mismatch or stale timestamp
            MalformedPayloadError: verified body is not a JSON object
        """
        # Fails fast on a missing secret before any header is inspected
        self._signing_key()
        message_id, timestamp_str, signature_header = extract_signature_headers(headers)

        self._check_timestamp(timestamp_str)

        expected = self.sign(message_id, timestamp_str, body).split(",", 1)[1]

        # Header carries space-separated "v1,<sig>" entries (key rotation)
        matched = False
        for entry in signature_header.split(" "):
            version, _, candidate = entry.partition(",")
            if version != _SIGNATURE_VERSION or not candidate:
                continue
            if hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8")):
                matched = True
                break

        if not matched:
            logger.warning("Webhook signature mismatch for message %s", message_id)
            raise InvalidSignatureError("Invalid signature")

        try:
            payload = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise MalformedPayloadError("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Webhook body is not a JSON object")

        event_type = payload.get("type")
        return VerifiedPayload(
            message_id=message_id,
            event_type=event_type if isinstance(event_type, str) else "",
            body=payload,
        )
