"""
Print queue depths, dead-letter count and the oldest entry age.

Usage:
  python -m scripts.queue_status
  python -m scripts.queue_status --recover   # also run one lease-recovery sweep
"""

import argparse
import asyncio
import json

from ticketbridge.config import Settings, get_redis_client
from ticketbridge.scheduler import AsyncioScheduler
from ticketbridge.store import RedisEventStore


async def status(recover: bool) -> None:
    settings = Settings()
    redis_client = get_redis_client(settings)
    store = RedisEventStore(redis_client, AsyncioScheduler(), lease_seconds=settings.processing_lease_seconds)
    try:
        if recover:
            recovered = await store.recover_expired()
            print(f"Recovered {recovered} entries with expired leases")
        stats = await store.stats()
        print(json.dumps(stats.model_dump(), indent=2))
    finally:
        await redis_client.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Show bridge queue status")
    parser.add_argument("--recover", action="store_true", help="Return expired processing entries to the queue first")
    args = parser.parse_args()
    asyncio.run(status(args.recover))


if __name__ == "__main__":
    main()
