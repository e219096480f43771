"""Shared constants for queue names, entry states, and event routing.

These values centralize naming so producers, workers, scripts and metrics
remain consistent across processes sharing one Redis instance.

Queues:
- ``webhook:events``: Active entries waiting to be claimed (priority, FIFO).
- ``webhook:delayed``: Requeued entries waiting for their backoff to elapse.
- ``webhook:processing``: Claimed entries, scored by lease expiry.
- ``webhook:dead_letter``: Terminal failures kept for inspection and replay.

States (QueueEntry.state):
- ``queued``: Enqueued and visible to consumers (possibly after a delay).
- ``processing``: Claimed by a consumer; invisible to others until released.
- ``acked``: Handler succeeded; entry removed.
- ``requeued``: Transient failure; back in the queue with a backoff delay.
- ``dead_lettered``: Retries exhausted or permanent failure.

Priorities:
- ``3``: status changes (conversation_updated)
- ``2``: attachments
- ``1``: messages
- ``0``: everything else
"""

QUEUE_EVENTS = "webhook:events"
QUEUE_DELAYED = "webhook:delayed"
QUEUE_PROCESSING = "webhook:processing"
QUEUE_DEAD_LETTER = "webhook:dead_letter"

# Redis hashes backing the queues
ENTRIES_KEY = "webhook:entries"
SCORES_KEY = "webhook:scores"
DEDUP_KEY_PREFIX = "dedup:"

STATE_QUEUED = "queued"
STATE_PROCESSING = "processing"
STATE_ACKED = "acked"
STATE_REQUEUED = "requeued"
STATE_DEAD_LETTERED = "dead_lettered"

PRIORITY_LOW = 0
PRIORITY_NORMAL = 1
PRIORITY_HIGH = 2
PRIORITY_URGENT = 3

# Dead-letter causes
CAUSE_RETRIES_EXHAUSTED = "retries_exhausted"
CAUSE_PERMANENT_FAILURE = "permanent_failure"
CAUSE_NO_HANDLER = "no_handler"

# Ticket statuses that close the chat thread
CLOSING_STATUSES = frozenset({"closed", "resolved"})

STATUS_COLORS = {
    "closed": 0xFF0000,
    "resolved": 0x00FF00,
    "open": 0xFFFF00,
}
