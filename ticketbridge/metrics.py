"""Prometheus metrics and a tiny HTTP server to expose them.

Call `start_metrics_server(port)` once in a process to expose /metrics.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, Gauge, start_http_server


# Event store
EVENTS_ENQUEUED_TOTAL = Counter(
    "bridge_events_enqueued_total", "Total events accepted into the store", ["type"]
)
EVENTS_DUPLICATE_TOTAL = Counter(
    "bridge_events_duplicate_total", "Total events dropped by the dedup window", ["type"]
)
QUEUE_DEPTH = Gauge(
    "bridge_queue_depth", "Current number of entries per named queue", ["queue"]
)
DEAD_LETTER_COUNT = Gauge(
    "bridge_dead_letter_count", "Entries currently held in the dead-letter queue"
)
OLDEST_ENTRY_AGE_SECONDS = Gauge(
    "bridge_oldest_entry_age_seconds", "Age of the oldest active entry"
)
ENTRIES_RECOVERED_TOTAL = Counter(
    "bridge_entries_recovered_total", "Processing entries returned to the queue after lease expiry"
)

# Dispatcher
EVENTS_PROCESSED_TOTAL = Counter(
    "bridge_events_processed_total", "Total entries processed by outcome", ["status", "type"]
)
EVENT_PROCESS_LATENCY_SECONDS = Histogram(
    "bridge_event_process_latency_seconds",
    "Time to process a single entry",
    ["type"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1, 2, 5, 15, 30, 60),
)
EVENTS_RETRIED_TOTAL = Counter(
    "bridge_events_retried_total", "Total retries scheduled", ["type"]
)
EVENTS_DEAD_LETTERED_TOTAL = Counter(
    "bridge_events_dead_lettered_total", "Total entries sent to the dead-letter queue", ["type", "cause"]
)
DEAD_LETTER_REPLAY_TOTAL = Counter(
    "bridge_dead_letter_replay_total", "Dead-letter entries replayed by operators", ["type"]
)

# Mapping resolver
RESOLVER_ATTEMPTS = Histogram(
    "bridge_resolver_attempts", "Lookups needed to resolve a ticket thread", buckets=(1, 2, 3, 4, 5, 8, 10)
)
RESOLVER_EXHAUSTED_TOTAL = Counter(
    "bridge_resolver_exhausted_total", "Resolutions that ran out of attempts", ["diagnosis"]
)

# Attachments
ATTACHMENTS_TOTAL = Counter(
    "bridge_attachments_total", "Attachments by verdict and rejection reason", ["verdict", "reason"]
)
ATTACHMENT_BYTES = Histogram(
    "bridge_attachment_bytes",
    "Size of accepted attachments",
    buckets=(1024, 16384, 131072, 1048576, 5242880, 10485760),
)
ATTACHMENT_UPLOAD_TOTAL = Counter(
    "bridge_attachment_upload_total", "Batched attachment uploads by result", ["result"]
)


def start_metrics_server(port: int = 9000) -> None:
    start_http_server(port)
