"""Webhook HTTP handlers: FastAPI route handlers for Clerk user webhooks.

Each delivery:
1. Reads raw body (needed for HMAC verification)
2. Verifies the Svix signature and freshness window
3. Normalizes the payload into a CanonicalUserEvent
4. Checks idempotency by message id (when Redis dedup is configured)
5. Applies the event to the user store
6. Returns 200 with a small acknowledgment body

Security contract:
- Never return error details to the webhook caller (info disclosure)
- Signature mismatch and stale timestamp share one 401 response
- Unhandled event types are acknowledged with 200
- Verification and payload errors never reach the store
- Store failures return 5xx/409 so the provider redelivers; the dedup
  claim is released on every failure path
- Log all webhook activity for audit trail (emails redacted)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from usersync.events import announce_sync
from usersync.webhooks.errors import (
    AuthenticationError,
    ConfigurationError,
    MalformedPayloadError,
    SyncError,
)
from usersync.webhooks.idempotency import DeliveryDeduplicator
from usersync.webhooks.normalizer import CanonicalUserEvent, EventKind, normalize
from usersync.webhooks.synchronizer import SyncResult, UserSynchronizer
from usersync.webhooks.verification import VerifiedPayload, WebhookVerifier, extract_signature_headers

logger = logging.getLogger(__name__)

WEBHOOK_PATHS = ("/api/webhook", "/webhooks/clerk")

# Webhook outcome counters for monitoring (simple in-memory for now)
_webhook_counts: dict[str, int] = {}


def _redact_email(email: str) -> str:
    """Show only the domain of an email address."""
    if "@" in email:
        return "***@" + email.split("@", 1)[1]
    return "***"


def _log_webhook(event_type: str, message_id: str, status: str) -> None:
    """Audit log for webhook activity."""
    _webhook_counts[status] = _webhook_counts.get(status, 0) + 1
    logger.info(
        "WEBHOOK_AUDIT event=%s id=%s status=%s count=%d",
        event_type,
        message_id,
        status,
        _webhook_counts[status],
    )


def webhook_counts() -> dict[str, int]:
    return dict(_webhook_counts)


def _delivery_id(headers: dict[str, str]) -> str:
    """Message id for audit lines, from either header family."""
    try:
        return extract_signature_headers(headers)[0]
    except AuthenticationError:
        return headers.get("svix-id") or headers.get("webhook-id") or "unknown"


@dataclass
class WebhookPipeline:
    """Verifier -> normalizer -> synchronizer, plus optional dedup."""

    verifier: WebhookVerifier
    synchronizer: UserSynchronizer
    deduplicator: DeliveryDeduplicator | None = None
    normalizer: Callable[[VerifiedPayload], CanonicalUserEvent] = normalize


async def _handle_webhook(request: Request, pipeline: WebhookPipeline) -> JSONResponse:
    """Handle one Clerk delivery.

    Returns 200 on success or for unhandled/duplicate events, 400 for
    missing headers or malformed payloads, 401 for bad signatures, 409 for
    store conflicts, 500 for misconfiguration or an unexpected store
    error and 503 when the store is unavailable.
    """
    start = time.time()

    # Read raw body for signature verification
    body = await request.body()

    # Build lowercase headers dict
    headers = {k.lower(): v for k, v in request.headers.items()}

    # 1-2. Verify and normalize
    try:
        payload = pipeline.verifier.verify(body, headers)
        event = pipeline.normalizer(payload)
    except ConfigurationError as e:
        logger.error("Webhook rejected, server misconfigured: %s", e.message)
        _log_webhook("unknown", "unknown", "misconfigured")
        return JSONResponse({"status": e.code}, status_code=e.status_code)
    except AuthenticationError as e:
        _log_webhook("unknown", "unknown", e.code)
        return JSONResponse({"status": e.code}, status_code=e.status_code)
    except MalformedPayloadError as e:
        logger.warning("Malformed webhook payload: %s", e.message)
        _log_webhook("unknown", _delivery_id(headers), e.code)
        return JSONResponse({"status": e.code}, status_code=e.status_code)

    logger.info("Webhook event received: %s (%s)", event.event_type, event.message_id)

    if event.kind is EventKind.UNHANDLED:
        _log_webhook(event.event_type or "unknown", event.message_id, "ignored")
        return JSONResponse({"status": "ignored", "event_type": event.event_type}, status_code=200)

    # 3. Check idempotency
    dedup = pipeline.deduplicator
    if dedup is not None and await run_in_threadpool(dedup.is_duplicate, event.message_id):
        _log_webhook(event.event_type, event.message_id, "duplicate")
        return JSONResponse({"status": "duplicate"}, status_code=200)

    # 4. Apply to the store
    try:
        result: SyncResult = await run_in_threadpool(pipeline.synchronizer.apply, event)
    except SyncError as e:
        if dedup is not None:
            await run_in_threadpool(dedup.release, event.message_id)
        logger.error(
            "Failed to sync webhook event %s/%s: %s",
            event.event_type,
            event.external_id,
            e.message,
        )
        _log_webhook(event.event_type, event.message_id, e.code)
        return JSONResponse({"status": e.code}, status_code=e.status_code)
    except Exception:
        # Any other failure frees the claim too
        if dedup is not None:
            await run_in_threadpool(dedup.release, event.message_id)
        logger.exception("Unexpected error syncing webhook event %s/%s", event.event_type, event.external_id)
        _log_webhook(event.event_type, event.message_id, "sync_failed")
        return JSONResponse({"status": "sync_failed"}, status_code=500)

    announce_sync(event.event_type, result.external_id, result.action.value)
    if result.record is not None:
        logger.info(
            "User %s %s (username=%s, email=%s)",
            result.external_id,
            result.action.value,
            result.record.username,
            _redact_email(result.record.email),
        )
    _log_webhook(event.event_type, event.message_id, result.action.value)

    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook processed in %.1fms: %s", elapsed_ms, event.event_type)

    return JSONResponse({"status": "ok", **result.as_dict()}, status_code=200)


def register_webhook_routes(app: FastAPI, pipeline: WebhookPipeline) -> None:
    """Register webhook endpoint routes on the FastAPI app."""

    @app.post(WEBHOOK_PATHS[0])
    async def clerk_webhook(request: Request):
        """Receive Clerk user webhooks (signature-verified)."""
        return await _handle_webhook(request, pipeline)

    @app.post(WEBHOOK_PATHS[1])
    async def clerk_webhook_alias(request: Request):
        """Receive Clerk user webhooks on the provider-scoped path."""
        return await _handle_webhook(request, pipeline)

    @app.get("/webhooks/status")
    async def webhook_status():
        """Webhook outcome counts."""
        return {"counts": webhook_counts()}

    logger.info("Webhook routes registered: %s", ", ".join(WEBHOOK_PATHS))
