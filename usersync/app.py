"""FastAPI application factory for the user sync webhook receiver.

Middleware:
- Rate limiting (slowapi) -- reject floods before verification work

Routes besides the webhook endpoints:
- GET /health  -- liveness
- GET /events  -- SSE stream of profile_revalidate / user_synced events
  (Bearer EVENTS_TOKEN when configured)
"""

from __future__ import annotations

import hmac
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address

from usersync.config import Settings
from usersync.events import event_stream, revalidate_profile
from usersync.store import InMemoryUserStore, PostgresUserStore, UserStore
from usersync.webhooks.handlers import WebhookPipeline, register_webhook_routes
from usersync.webhooks.idempotency import DeliveryDeduplicator
from usersync.webhooks.synchronizer import UserSynchronizer
from usersync.webhooks.verification import WebhookVerifier

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Attach one stream handler to the ``usersync`` logger.  Idempotent."""
    root = logging.getLogger("usersync")
    root.setLevel(level)
    if not any(getattr(h, "_usersync", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._usersync = True  # type: ignore[attr-defined]
        root.addHandler(handler)


def _bearer_matches(request: Request, token: str) -> bool:
    scheme, _, supplied = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not supplied:
        return False
    return hmac.compare_digest(supplied.encode("utf-8"), token.encode("utf-8"))


def build_store(settings: Settings) -> UserStore:
    """Create the store selected by settings, wired to profile revalidation."""
    if settings.store_backend == "postgres":
        return PostgresUserStore(settings.database_url, on_upsert=revalidate_profile)
    return InMemoryUserStore(on_upsert=revalidate_profile)


def create_app(
    settings: Settings | None = None,
    store: UserStore | None = None,
    deduplicator: DeliveryDeduplicator | None = None,
) -> FastAPI:
    """Build the webhook receiver app.

    Args:
        settings: Runtime settings (default: read from the environment)
        store: User store override (default: per settings.store_backend)
        deduplicator: Dedup override (default: Redis when REDIS_URL is set)
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    if store is None:
        store = build_store(settings)
    if deduplicator is None and settings.dedup_enabled:
        deduplicator = DeliveryDeduplicator(settings.redis_url, ttl_seconds=settings.dedup_ttl_seconds)

    pipeline = WebhookPipeline(
        verifier=WebhookVerifier(settings.webhook_secret, tolerance_seconds=settings.tolerance_seconds),
        synchronizer=UserSynchronizer(store),
        deduplicator=deduplicator,
    )

    app = FastAPI(title="usersync", docs_url=None, redoc_url=None)

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.state.settings = settings
    app.state.store = store
    app.state.pipeline = pipeline

    register_webhook_routes(app, pipeline)

    @app.get("/health")
    @limiter.exempt
    async def health():
        return {"status": "ok"}

    @app.get("/events")
    @limiter.exempt
    async def events(request: Request):
        """Server-Sent Events feed for cache and page revalidation."""
        if settings.events_token and not _bearer_matches(request, settings.events_token):
            return JSONResponse({"status": "unauthorized"}, status_code=401)
        return StreamingResponse(event_stream(request), media_type="text/event-stream")

    logger.info(
        "usersync app created (store=%s, dedup=%s)",
        type(store).__name__,
        "on" if deduplicator is not None else "off",
    )
    return app
