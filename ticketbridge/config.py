import os
from typing import Any, Callable, Literal, Optional

from pydantic import BaseModel, Field

from ticketbridge.constants import PRIORITY_HIGH, PRIORITY_LOW, PRIORITY_NORMAL, PRIORITY_URGENT


EnvName = Literal["development", "staging", "production"]


def _env_str(name: str, default: str) -> Callable[[], str]:
    return lambda: os.getenv(name, default)


def _env_int(name: str, default: int) -> Callable[[], int]:
    return lambda: int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> Callable[[], float]:
    return lambda: float(os.getenv(name, str(default)))


def environment() -> EnvName:
    return os.getenv("ENVIRONMENT", "development").lower()  # type: ignore[return-value]


# Default priority per inbound event type: status changes beat attachments beat messages
_EVENT_PRIORITIES = {
    "conversation_updated": PRIORITY_URGENT,
    "attachment": PRIORITY_HIGH,
    "message_created": PRIORITY_NORMAL,
}


def priority_for_event_type(event_type: str) -> int:
    """Return the default logical priority (0..3) for an event type."""
    return _EVENT_PRIORITIES.get(str(event_type), PRIORITY_LOW)


def parse_priority(value: str | int) -> int:
    """Parse user-provided priority into logical 0..3 (P0..P3, higher first)."""
    if isinstance(value, int):
        return min(max(value, 0), 3)
    v = str(value).strip().upper()
    if v.startswith("P") and v[1:].isdigit():
        return min(max(int(v[1:]), 0), 3)
    if v.isdigit():
        return min(max(int(v), 0), 3)
    return PRIORITY_NORMAL


class Settings(BaseModel):
    """Typed configuration with sensible defaults for the bridge worker and scripts.

    Why this exists:
    - Centralize environment configuration and validation across scripts and libs
    - Provide explicit, typed access to queue, resolver and attachment limits

    How to use:
    - Instantiate once per process and pass the values into constructors
    - Override values via environment variables (read at instantiation time)

    Examples:
    - Give slow ticket creation more room before dead-lettering messages:
      ```bash
      export RESOLVER_MAX_ATTEMPTS=6
      export RESOLVER_MAX_RETRY_WINDOW_MS=60000
      ```
    - Tighten attachment limits for a small deployment:
      ```bash
      export ATTACHMENT_MAX_FILE_BYTES=5242880
      export ATTACHMENT_MAX_FILES=5
      ```
    """
    environment: EnvName = Field(default_factory=environment)
    log_level: str = Field(default_factory=_env_str("LOG_LEVEL", "INFO"))
    log_file: str = Field(default_factory=_env_str("LOG_FILE", ""))

    redis_url: str = Field(default_factory=_env_str("REDIS_URL", "redis://localhost:6379/0"))
    database_url: str = Field(default_factory=_env_str("DATABASE_URL", ""))
    discord_bot_token: str = Field(default_factory=_env_str("DISCORD_BOT_TOKEN", ""))
    discord_api_base: str = Field(default_factory=_env_str("DISCORD_API_BASE", "https://discord.com/api/v10"))
    metrics_port: int = Field(default_factory=_env_int("METRICS_PORT", 9000))

    # Queue and dispatcher
    max_retries: int = Field(default_factory=_env_int("QUEUE_MAX_RETRIES", 3))
    dedup_ttl_seconds: int = Field(default_factory=_env_int("DEDUP_TTL_SECONDS", 300))
    retry_base_delay_ms: int = Field(default_factory=_env_int("RETRY_BASE_DELAY_MS", 1000))
    retry_max_delay_ms: int = Field(default_factory=_env_int("RETRY_MAX_DELAY_MS", 30000))
    processing_lease_seconds: int = Field(default_factory=_env_int("PROCESSING_LEASE_SECONDS", 300))
    worker_concurrency: int = Field(default_factory=_env_int("WORKER_CONCURRENCY", 3))
    worker_poll_interval_ms: int = Field(default_factory=_env_int("WORKER_POLL_INTERVAL_MS", 1000))
    recovery_interval_seconds: int = Field(default_factory=_env_int("RECOVERY_INTERVAL_SECONDS", 30))

    # Mapping resolver (message handling budget)
    resolver_max_attempts: int = Field(default_factory=_env_int("RESOLVER_MAX_ATTEMPTS", 5))
    resolver_base_delay_ms: int = Field(default_factory=_env_int("RESOLVER_BASE_DELAY_MS", 2000))
    resolver_max_retry_window_ms: int = Field(default_factory=_env_int("RESOLVER_MAX_RETRY_WINDOW_MS", 30000))
    mapping_cache_ttl_seconds: int = Field(default_factory=_env_int("MAPPING_CACHE_TTL_SECONDS", 3600))
    recent_message_limit: int = Field(default_factory=_env_int("RECENT_MESSAGE_LIMIT", 50))

    # Attachment pipeline
    attachment_max_file_bytes: int = Field(default_factory=_env_int("ATTACHMENT_MAX_FILE_BYTES", 10 * 1024 * 1024))
    attachment_max_files: int = Field(default_factory=_env_int("ATTACHMENT_MAX_FILES", 10))
    attachment_max_batch_bytes: int = Field(default_factory=_env_int("ATTACHMENT_MAX_BATCH_BYTES", 50 * 1024 * 1024))
    attachment_download_timeout_s: float = Field(default_factory=_env_float("ATTACHMENT_DOWNLOAD_TIMEOUT_S", 15.0))
    attachment_upload_timeout_s: float = Field(default_factory=_env_float("ATTACHMENT_UPLOAD_TIMEOUT_S", 30.0))
    attachment_concurrency: int = Field(default_factory=_env_int("ATTACHMENT_CONCURRENCY", 3))
    attachment_upload_attempts: int = Field(default_factory=_env_int("ATTACHMENT_UPLOAD_ATTEMPTS", 3))
    buffer_pool_size: int = Field(default_factory=_env_int("BUFFER_POOL_SIZE", 5))
    memory_threshold_bytes: int = Field(default_factory=_env_int("MEMORY_THRESHOLD_BYTES", 100 * 1024 * 1024))


_redis_client: Optional[Any] = None


def get_redis_client(settings: Optional[Settings] = None):
    """Lazily create and cache an asyncio Redis client for this process."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    import redis.asyncio as redis  # type: ignore

    url = (settings or Settings()).redis_url
    _redis_client = redis.from_url(url, decode_responses=True, health_check_interval=30)
    return _redis_client
