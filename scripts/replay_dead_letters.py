"""
Inspect and replay dead-lettered webhook events.

Why:
- Dead-lettered events are never retried automatically. Operators decide,
  after fixing the cause (missing mapping, revoked permissions, ...), which
  of them go back into the queue.

How:
- Reads records from ``webhook:dead_letter``, filters by event type or id,
  and re-enqueues each event with a fresh attempt count (bypassing dedup).

Usage examples:
- List the 20 oldest dead letters:
  python -m scripts.replay_dead_letters --list --limit 20

- Dry run replay of message events:
  python -m scripts.replay_dead_letters --type message_created --limit 50 --dry-run

- Replay two specific events without prompting:
  python -m scripts.replay_dead_letters --id 3f2c... --id 9ab1... --yes
"""

import argparse
import asyncio
from typing import Optional, Sequence

from ticketbridge.config import Settings, get_redis_client
from ticketbridge.handlers import describe
from ticketbridge.metrics import DEAD_LETTER_REPLAY_TOTAL
from ticketbridge.scheduler import AsyncioScheduler
from ticketbridge.store import EventStore, RedisEventStore


async def list_dead_letters(store: EventStore, limit: int, event_type: Optional[str]) -> int:
    records = await store.list_dead_letters(limit=limit, event_type=event_type)
    if not records:
        print("No dead-lettered events found")
        return 0
    for record in records:
        summary = describe(record.entry.event)
        print(
            f"{record.dead_lettered_at.isoformat()} {summary['id']} type={summary['type']} "
            f"ticket={summary['ticket_id']} reason={record.reason} attempts={record.entry.attempt_count} "
            f"error={record.error_type}: {record.error_message} cause={record.context.get('probable_cause')}"
        )
    return len(records)


async def replay(
    store: EventStore,
    limit: int,
    *,
    dry_run: bool,
    event_type: Optional[str] = None,
    event_ids: Sequence[str] = (),
    yes: bool = False,
) -> int:
    """Replay eligible dead letters; return how many were re-enqueued.

    Examples:
    - Dry run:
      await replay(store, 5, dry_run=True)
    - Replay attachments without a prompt:
      await replay(store, 20, dry_run=False, event_type="attachment", yes=True)
    """
    records = await store.list_dead_letters(limit=10_000 if event_ids else limit, event_type=event_type)
    if event_ids:
        wanted = set(event_ids)
        records = [r for r in records if r.entry.event.id in wanted][:limit]
    if not records:
        print("No dead-lettered events found")
        return 0

    if dry_run:
        print(f"Dry-run: would replay {len(records)} events")
        for record in records:
            print(f"  {record.entry.event.id} type={record.entry.event.type.value} reason={record.reason}")
        return 0

    if not yes:
        answer = input(f"Replay {len(records)} dead-lettered events? [y/N] ")
        if answer.strip().lower() not in {"y", "yes"}:
            print("Aborted")
            return 0

    replayed = 0
    total = len(records)
    for idx, record in enumerate(records, start=1):
        event = record.entry.event
        if await store.replay_dead_letter(event.id):
            replayed += 1
            DEAD_LETTER_REPLAY_TOTAL.labels(type=event.type.value).inc()
            print(f"[{idx}/{total}] Replayed {event.id}")
        else:
            print(f"[{idx}/{total}] Skipped {event.id} (already replayed)")
    return replayed


def main() -> None:
    """CLI entrypoint for inspecting and replaying dead letters."""
    parser = argparse.ArgumentParser(description="Inspect and replay dead-lettered events")
    parser.add_argument("--list", action="store_true", help="Only list dead letters")
    parser.add_argument("--limit", type=int, default=10)
    parser.add_argument("--type", dest="event_type", help="Filter by event type")
    parser.add_argument("--id", dest="event_ids", action="append", default=[], help="Replay a specific event id")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--yes", action="store_true", help="Skip the confirmation prompt")
    args = parser.parse_args()

    async def run() -> None:
        settings = Settings()
        redis_client = get_redis_client(settings)
        store = RedisEventStore(redis_client, AsyncioScheduler(), dedup_ttl_seconds=settings.dedup_ttl_seconds)
        try:
            if args.list:
                await list_dead_letters(store, args.limit, args.event_type)
            else:
                await replay(store, args.limit, dry_run=args.dry_run, event_type=args.event_type,
                             event_ids=args.event_ids, yes=args.yes)
        finally:
            await redis_client.aclose()

    asyncio.run(run())


if __name__ == "__main__":
    main()
