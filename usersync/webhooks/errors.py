"""Webhook pipeline exceptions.

Every exception carries the HTTP status the handler maps it to and a short
public ``code`` that is safe to return to the caller. Messages may be
logged but are never returned in a response body.

Taxonomy:
- ConfigurationError      -> 500 (server misconfiguration, not retried)
- AuthenticationError     -> 400 missing headers / 401 bad signature
- MalformedPayloadError   -> 400
- SyncError               -> 503 transient store failure / 409 conflict
"""

from __future__ import annotations

__all__ = [
    "AuthenticationError",
    "ConfigurationError",
    "ConstraintViolationError",
    "InvalidSignatureError",
    "MalformedPayloadError",
    "MissingHeadersError",
    "MissingSecretError",
    "SyncError",
    "TransientStoreError",
    "WebhookError",
]


class WebhookError(Exception):
    """Base exception for the webhook ingestion pipeline."""

    status_code: int = 500
    code: str = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(WebhookError):
    """Process configuration is missing or invalid."""

    status_code = 500
    code = "misconfigured"


class MissingSecretError(ConfigurationError):
    """No webhook signing secret was configured."""

    code = "webhook_secret_missing"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class AuthenticationError(WebhookError):
    """The delivery could not be authenticated."""

    status_code = 401
    code = "unauthorized"


class MissingHeadersError(AuthenticationError):
    """One of the id/timestamp/signature headers is absent or empty."""

    status_code = 400
    code = "missing_headers"


class InvalidSignatureError(AuthenticationError):
    """Signature mismatch or timestamp outside the freshness window.

    Both causes share this one class so the response never reveals which
    check failed.
    """

    code = "invalid_signature"


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


class MalformedPayloadError(WebhookError):
    """Verified payload is missing a required field or is not a JSON object."""

    status_code = 400
    code = "malformed_payload"


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SyncError(WebhookError):
    """Base exception for store failures raised while applying an event."""

    status_code = 500
    code = "sync_failed"


class TransientStoreError(SyncError):
    """Store unreachable or timed out. Safe for the provider to redeliver."""

    status_code = 503
    code = "store_unavailable"


class ConstraintViolationError(SyncError):
    """Store rejected the write, e.g. a username uniqueness conflict."""

    status_code = 409
    code = "constraint_violation"
