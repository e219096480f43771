"""
Enqueue raw ticketing webhooks.

- Validates and normalizes each webhook into bridge events
- Enqueues them into the shared Redis store (duplicates are dropped)

Usage:
  python -m scripts.enqueue_webhook --file webhook.json
  cat webhooks.json | python -m scripts.enqueue_webhook --dry-run
"""

import argparse
import asyncio
import json
import sys
from typing import Any

from ticketbridge.config import Settings, get_redis_client
from ticketbridge.scheduler import AsyncioScheduler
from ticketbridge.store import EventStore, RedisEventStore
from ticketbridge.validation import events_from_webhook


async def enqueue_webhooks(store: EventStore, documents: list[Any], *, dry_run: bool = False) -> int:
    """Normalize and enqueue webhooks; return the number of events accepted."""
    accepted = 0
    for document in documents:
        for event in events_from_webhook(document):
            if dry_run:
                print(f"Would enqueue {event.type.value} ticket={event.ticket_id} priority={event.priority}")
                continue
            if await store.enqueue(event):
                accepted += 1
                print(f"Enqueued {event.id} {event.type.value} ticket={event.ticket_id} priority={event.priority}")
            else:
                print(f"Duplicate dropped: {event.type.value} ticket={event.ticket_id}")
    return accepted


def main() -> None:
    parser = argparse.ArgumentParser(description="Enqueue ticketing webhooks")
    parser.add_argument("--file", help="JSON file with one webhook or a list (default: stdin)")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if args.file:
        with open(args.file, encoding="utf-8") as fh:
            raw = json.load(fh)
    else:
        raw = json.load(sys.stdin)
    documents = raw if isinstance(raw, list) else [raw]

    async def run() -> None:
        settings = Settings()
        redis_client = get_redis_client(settings)
        store = RedisEventStore(redis_client, AsyncioScheduler(), dedup_ttl_seconds=settings.dedup_ttl_seconds)
        try:
            accepted = await enqueue_webhooks(store, documents, dry_run=args.dry_run)
            print(f"{accepted} events enqueued")
        finally:
            await redis_client.aclose()

    asyncio.run(run())


if __name__ == "__main__":
    main()
