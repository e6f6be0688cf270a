"""CLI for the user sync webhook receiver.

Usage:
    python -m usersync                 # same as serve
    python -m usersync serve --host 0.0.0.0 --port 8000
    python -m usersync init-db
    python -m usersync sign payload.json --id msg_123
"""

from __future__ import annotations

import argparse
import json
import sys
import time
import uuid
from pathlib import Path

from usersync.config import Settings
from usersync.webhooks.errors import ConfigurationError, WebhookError
from usersync.webhooks.verification import WebhookVerifier


def _load_settings() -> Settings:
    try:
        return Settings.from_env()
    except ConfigurationError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        sys.exit(2)


def _init_tables(database_url: str) -> None:
    from usersync.store import PostgresUserStore

    try:
        PostgresUserStore(database_url).init_tables()
    except WebhookError as e:
        print(f"ERROR: could not initialize the users table: {e.message}", file=sys.stderr)
        sys.exit(1)


def cmd_serve(args: argparse.Namespace) -> None:
    """Run the webhook receiver with uvicorn."""
    import uvicorn

    from usersync.app import create_app

    settings = _load_settings()
    if settings.store_backend == "postgres":
        _init_tables(settings.database_url)
    uvicorn.run(create_app(settings), host=args.host, port=args.port, log_level=settings.log_level.lower())


def cmd_init_db(args: argparse.Namespace) -> None:
    """Create the Postgres users table."""
    settings = _load_settings()
    if not settings.database_url:
        print("ERROR: DATABASE_URL is not set", file=sys.stderr)
        sys.exit(1)
    _init_tables(settings.database_url)
    print("sync_users table ready")


def cmd_sign(args: argparse.Namespace) -> None:
    """Print signature headers for a payload file (local testing)."""
    payload_path = Path(args.payload)
    if not payload_path.exists():
        print(f"ERROR: payload file not found: {payload_path}", file=sys.stderr)
        sys.exit(1)

    settings = _load_settings()
    verifier = WebhookVerifier(settings.webhook_secret)
    body = payload_path.read_bytes()
    message_id = args.id or f"msg_{uuid.uuid4().hex}"
    timestamp = str(int(time.time()))
    try:
        signature = verifier.sign(message_id, timestamp, body)
    except ConfigurationError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        sys.exit(2)

    headers = {
        "svix-id": message_id,
        "svix-timestamp": timestamp,
        "svix-signature": signature,
    }
    print(json.dumps(headers, indent=2))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="usersync",
        description="Clerk user webhook receiver",
    )
    parser.set_defaults(func=cmd_serve, host="127.0.0.1", port=8000)
    sub = parser.add_subparsers(dest="command")

    # serve
    p_serve = sub.add_parser("serve", help="Run the webhook receiver")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.set_defaults(func=cmd_serve)

    # init-db
    p_init = sub.add_parser("init-db", help="Create the Postgres users table")
    p_init.set_defaults(func=cmd_init_db)

    # sign
    p_sign = sub.add_parser("sign", help="Sign a payload file with WEBHOOK_SECRET")
    p_sign.add_argument("payload", help="Path to the JSON payload")
    p_sign.add_argument("--id", help="Message id (random if omitted)")
    p_sign.set_defaults(func=cmd_sign)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main()
