import logging
import os

from ticketbridge.attachments import AttachmentLimits
from ticketbridge.config import Settings, parse_priority, priority_for_event_type
from ticketbridge.db import normalize_database_url
from ticketbridge.logging_setup import setup_logging
from ticketbridge.resolver import ResolveOptions
from ticketbridge.retry import RetryPolicy


def test_settings_defaults():
    for name in ("QUEUE_MAX_RETRIES", "DEDUP_TTL_SECONDS", "RESOLVER_MAX_ATTEMPTS", "ATTACHMENT_MAX_FILES"):
        os.environ.pop(name, None)
    s = Settings()
    assert s.max_retries == 3
    assert s.dedup_ttl_seconds == 300
    assert s.resolver_max_attempts == 5
    assert s.resolver_base_delay_ms == 2000
    assert s.attachment_max_files == 10
    assert s.attachment_max_file_bytes == 10 * 1024 * 1024


def test_settings_env_override(monkeypatch):
    monkeypatch.setenv("QUEUE_MAX_RETRIES", "7")
    monkeypatch.setenv("RESOLVER_MAX_RETRY_WINDOW_MS", "60000")
    monkeypatch.setenv("ATTACHMENT_DOWNLOAD_TIMEOUT_S", "2.5")
    s = Settings()
    assert RetryPolicy.from_settings(s).max_retries == 7
    assert ResolveOptions.from_settings(s).max_retry_window_ms == 60000
    assert AttachmentLimits.from_settings(s).download_timeout_s == 2.5


def test_priorities():
    assert priority_for_event_type("conversation_updated") == 3
    assert priority_for_event_type("attachment") == 2
    assert priority_for_event_type("message_created") == 1
    assert priority_for_event_type("thread_create") == 0
    assert parse_priority("P2") == 2
    assert parse_priority("9") == 3
    assert parse_priority(-1) == 0
    assert parse_priority("urgent") == 1


def test_normalize_database_url():
    assert normalize_database_url("postgres://u:p@db/bridge") == "postgresql+asyncpg://u:p@db/bridge"
    assert normalize_database_url("postgresql://u@db/x") == "postgresql+asyncpg://u@db/x"
    assert normalize_database_url("sqlite+aiosqlite:///x.db") == "sqlite+aiosqlite:///x.db"


def test_setup_logging_writes_file(tmp_path):
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    log_file = tmp_path / "logs" / "bridge.log"
    try:
        setup_logging("debug", log_file=str(log_file))
        logging.getLogger("ticketbridge.test").debug("queue transition")
        for handler in root.handlers:
            handler.flush()
        assert "queue transition" in log_file.read_text()
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers = saved_handlers
        root.setLevel(saved_level)
