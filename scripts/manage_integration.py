#!/usr/bin/env python3
"""CLI script to manage a SyncBridge integration.

Usage:
    python scripts/manage_integration.py provision acme
    python scripts/manage_integration.py teardown acme
    python scripts/manage_integration.py backfill acme --pages 5
    python scripts/manage_integration.py messages acme --level errors
    python scripts/manage_integration.py dlq-list
    python scripts/manage_integration.py dlq-replay 1712345678901-0

Connects directly to the database and Redis using DATABASE_URL / REDIS_URL
from environment or .env file. API credentials and BASE_URL come from the
same settings as the web app.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Ensure project root is on sys.path so we can import src.syncbridge
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


def _dump(model) -> None:
    print(json.dumps(model.model_dump(mode="json"), indent=2))


async def _integration(integration_id: str, create: bool = False):
    from src.syncbridge.main import build_integration_factory

    integration = await build_integration_factory().build(integration_id, create=create)
    if integration is None:
        print(f"Integration '{integration_id}' not found", file=sys.stderr)
        sys.exit(1)
    return integration


async def main_async(args: argparse.Namespace) -> None:
    from src.syncbridge.api.middleware.logging import configure_structlog
    from src.syncbridge.config import get_settings
    from src.syncbridge.core.database import close_db, init_db
    from src.syncbridge.core.redis import close_redis, get_redis_pool

    configure_structlog()
    settings = get_settings()
    await init_db()

    try:
        if args.command == "provision":
            result = await (await _integration(args.integration_id, create=True)).provision()
            _dump(result)
            if not result.success:
                sys.exit(2)

        elif args.command == "teardown":
            result = await (await _integration(args.integration_id)).teardown()
            _dump(result)
            if not result.success:
                sys.exit(2)

        elif args.command == "backfill":
            integration = await _integration(args.integration_id)
            for page in await integration.run_backfill(args.object_type, args.cursor, args.pages):
                _dump(page)

        elif args.command == "messages":
            from src.syncbridge.sync.schemas import MessageLevel

            integration = await _integration(args.integration_id)
            level = MessageLevel(args.level) if args.level else None
            for message in await integration.list_messages(level):
                print(f"[{message.level.value}] {message.timestamp.isoformat()} {message.title}: {message.message}")

        elif args.command in ("dlq-list", "dlq-replay"):
            from src.syncbridge.events.bus import WebhookQueue
            from src.syncbridge.events.dlq import DeadLetterQueue

            dlq = DeadLetterQueue(WebhookQueue(get_redis_pool(), namespace=settings.QUEUE_NAMESPACE))
            if args.command == "dlq-list":
                for message_id, data in await dlq.list_dlq_messages(settings.QUEUE_STREAM, count=args.count):
                    print(
                        f"{message_id}  integration={data.get('integration_id')} "
                        f"event={data.get('event_type') or '-'} error={data.get('_dlq_error')}"
                    )
            else:
                new_id = await dlq.replay_message(settings.QUEUE_STREAM, args.message_id)
                print(f"Replayed {args.message_id} as {new_id}")
    finally:
        await close_db()
        await close_redis()


def main() -> None:
    parser = argparse.ArgumentParser(description="Manage a SyncBridge integration")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("provision", "Create webhook subscriptions on both services"),
        ("teardown", "Delete all webhook subscriptions"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("integration_id")

    p = sub.add_parser("backfill", help="Sync existing CRM records")
    p.add_argument("integration_id")
    p.add_argument("--object-type", default="people")
    p.add_argument("--cursor", type=int, default=None)
    p.add_argument("--pages", type=int, default=1, help="Maximum pages (0 = until exhausted)")

    p = sub.add_parser("messages", help="Show integration messages")
    p.add_argument("integration_id")
    p.add_argument("--level", choices=["errors", "warnings"], default=None)

    p = sub.add_parser("dlq-list", help="List dead-lettered webhook envelopes")
    p.add_argument("--count", type=int, default=50)

    p = sub.add_parser("dlq-replay", help="Re-queue a dead-lettered envelope")
    p.add_argument("message_id")

    args = parser.parse_args()
    if args.command == "backfill" and args.pages == 0:
        args.pages = None
    asyncio.run(main_async(args))


if __name__ == "__main__":
    main()
