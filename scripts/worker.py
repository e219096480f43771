"""
Bridge worker process.

- Consumes the shared webhook queue in Redis (priority, dedup, leases)
- Resolves each ticket's chat thread and delivers messages, attachments and
  status changes through the Discord REST API
- Retries transient failures with jittered backoff and dead-letters the rest
- Exposes Prometheus metrics and periodically recovers expired leases

Usage:
  REDIS_URL=redis://localhost:6379/0 DATABASE_URL=postgres://... \
  DISCORD_BOT_TOKEN=... python -m scripts.worker
"""

import asyncio
import logging
import signal

from ticketbridge.attachments import AttachmentLimits, AttachmentPipeline, BufferPool, HttpxFileSource
from ticketbridge.config import Settings, get_redis_client
from ticketbridge.db import create_tables
from ticketbridge.discord import DiscordRestClient
from ticketbridge.dispatcher import Dispatcher
from ticketbridge.handlers import BridgeHandlers
from ticketbridge.logging_setup import setup_logging
from ticketbridge.mapping_store import RedisMappingCache, SqlMappingStore
from ticketbridge.metrics import start_metrics_server
from ticketbridge.resolver import ResolveOptions, ThreadResolver
from ticketbridge.retry import RetryPolicy
from ticketbridge.scheduler import AsyncioScheduler
from ticketbridge.store import RedisEventStore
from ticketbridge.tracing import start_tracing


logger = logging.getLogger("scripts.worker")


def build_dispatcher(settings: Settings, redis_client, discord: DiscordRestClient, files: HttpxFileSource) -> Dispatcher:
    """Wire the store, resolver, pipeline and handlers from settings."""
    scheduler = AsyncioScheduler()
    policy = RetryPolicy.from_settings(settings)
    store = RedisEventStore(
        redis_client,
        scheduler,
        dedup_ttl_seconds=settings.dedup_ttl_seconds,
        lease_seconds=settings.processing_lease_seconds,
    )
    mappings = SqlMappingStore()
    resolver = ThreadResolver(mappings, discord, scheduler)
    pipeline = AttachmentPipeline(
        discord,
        files,
        scheduler,
        limits=AttachmentLimits.from_settings(settings),
        pool=BufferPool(settings.buffer_pool_size),
        retry_policy=policy,
    )
    handlers = BridgeHandlers(
        resolver,
        discord,
        pipeline,
        mappings,
        resolve_options=ResolveOptions.from_settings(settings),
        mapping_cache=RedisMappingCache(redis_client, settings.mapping_cache_ttl_seconds),
        recent_message_limit=settings.recent_message_limit,
    )
    return Dispatcher(
        store,
        handlers.registry(),
        scheduler,
        policy=policy,
        concurrency=settings.worker_concurrency,
        poll_interval_s=settings.worker_poll_interval_ms / 1000.0,
        recovery_interval_s=settings.recovery_interval_seconds,
    )


async def main() -> None:
    """Entrypoint for running a worker as a script."""
    settings = Settings()
    setup_logging(settings.log_level, log_file=settings.log_file or None)
    start_tracing("ticket-bridge-worker")
    try:
        start_metrics_server(settings.metrics_port)
        logger.info("Metrics server listening on :%d /metrics", settings.metrics_port)
    except OSError:
        # Already started in this process
        pass

    await create_tables()
    redis_client = get_redis_client(settings)
    discord = DiscordRestClient(settings.discord_bot_token, api_base=settings.discord_api_base)
    files = HttpxFileSource()
    dispatcher = build_dispatcher(settings, redis_client, discord, files)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, dispatcher.stop)

    try:
        await dispatcher.run()
    finally:
        await files.aclose()
        await discord.aclose()
        await redis_client.aclose()


if __name__ == "__main__":
    asyncio.run(main())
