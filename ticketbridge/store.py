"""Durable priority queue with dedup, processing leases and a dead-letter area.

Why this exists:
- Webhooks must survive worker restarts and be retried without being lost
  or delivered twice within the dedup window.

How it works:
- Entries are ordered by descending priority (3 first) and FIFO inside a tier
  using the sequence assigned at enqueue time. A requeued entry keeps its
  sequence, so once its backoff elapses it returns to its original place.
- ``dequeue`` claims the head entry and records a processing lease. Entries
  whose lease lapses (crashed consumer) are returned by ``recover_expired``.
- ``dead_letter`` moves an entry out of circulation for good; operators can
  inspect and replay it.

Two backends share the ``EventStore`` contract:
- ``InMemoryEventStore``: single process, used by tests and local runs
- ``RedisEventStore``: Lua scripts keep enqueue-with-dedup, claim and
  recovery atomic across worker processes

Example:
    >>> # store = RedisEventStore(get_redis_client(), AsyncioScheduler())
    >>> # await store.enqueue(InboundEvent(type="message_created", ticket_id="42"))
    >>> # entry = await store.dequeue()
    >>> # await store.ack(entry)
"""

from __future__ import annotations

import abc
import asyncio
import heapq
import itertools
import logging
from typing import Any, Optional

from ticketbridge.constants import (
    DEDUP_KEY_PREFIX,
    ENTRIES_KEY,
    QUEUE_DEAD_LETTER,
    QUEUE_DELAYED,
    QUEUE_EVENTS,
    QUEUE_PROCESSING,
    SCORES_KEY,
    STATE_DEAD_LETTERED,
    STATE_PROCESSING,
    STATE_QUEUED,
)
from ticketbridge.dedup import InMemoryDedupCache, compute_fingerprint
from ticketbridge.metrics import (
    DEAD_LETTER_COUNT,
    ENTRIES_RECOVERED_TOTAL,
    EVENTS_DUPLICATE_TOTAL,
    EVENTS_ENQUEUED_TOTAL,
    OLDEST_ENTRY_AGE_SECONDS,
    QUEUE_DEPTH,
)
from ticketbridge.models import DeadLetterRecord, InboundEvent, QueueEntry, QueueStats
from ticketbridge.scheduler import Scheduler


logger = logging.getLogger(__name__)


class EventStore(abc.ABC):
    """Contract shared by the store backends."""

    def __init__(self, scheduler: Scheduler, *, dedup_ttl_seconds: int = 300, lease_seconds: float = 300):
        self._scheduler = scheduler
        self.dedup_ttl_seconds = dedup_ttl_seconds
        self.lease_seconds = lease_seconds
        self.duplicates_dropped = 0

    @abc.abstractmethod
    async def enqueue(self, event: InboundEvent, *, skip_dedup: bool = False) -> bool:
        """Insert the event; return False when it was dropped as a duplicate."""

    @abc.abstractmethod
    async def dequeue(self) -> Optional[QueueEntry]:
        """Claim the highest-priority visible entry, or return None."""

    @abc.abstractmethod
    async def move_to_processing(self, entry: QueueEntry) -> bool:
        """Claim a specific visible entry; False if another consumer got it first."""

    @abc.abstractmethod
    async def ack(self, entry: QueueEntry) -> None:
        """Remove a processed entry permanently."""

    @abc.abstractmethod
    async def requeue_with_delay(self, entry: QueueEntry, delay_seconds: float) -> None:
        """Return a claimed entry to the queue, invisible for ``delay_seconds``."""

    @abc.abstractmethod
    async def dead_letter(
        self,
        entry: QueueEntry,
        reason: str,
        *,
        error: Optional[BaseException] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> DeadLetterRecord:
        """Move an entry to the dead-letter queue; it is never retried automatically."""

    @abc.abstractmethod
    async def recover_expired(self) -> int:
        """Return entries with lapsed processing leases to the queue."""

    @abc.abstractmethod
    async def stats(self) -> QueueStats:
        ...

    @abc.abstractmethod
    async def list_dead_letters(self, limit: int = 100, event_type: Optional[str] = None) -> list[DeadLetterRecord]:
        ...

    @abc.abstractmethod
    async def replay_dead_letter(self, event_id: str) -> bool:
        """Re-enqueue a dead-lettered event with a fresh attempt count."""

    # -------------------------
    # Shared helpers
    # -------------------------

    def _lease_until(self) -> float:
        return self._scheduler.time() + self.lease_seconds

    def _observe_enqueue(self, event: InboundEvent, inserted: bool) -> None:
        if inserted:
            EVENTS_ENQUEUED_TOTAL.labels(type=event.type.value).inc()
            logger.info("Enqueued event %s type=%s ticket=%s priority=%d",
                        event.id, event.type.value, event.ticket_id, event.priority)
        else:
            self.duplicates_dropped += 1
            EVENTS_DUPLICATE_TOTAL.labels(type=event.type.value).inc()
            logger.debug("Dropped duplicate event %s type=%s ticket=%s",
                         event.id, event.type.value, event.ticket_id)

    def _build_dead_letter(
        self,
        entry: QueueEntry,
        reason: str,
        error: Optional[BaseException],
        context: Optional[dict[str, Any]],
    ) -> DeadLetterRecord:
        return DeadLetterRecord(
            entry=entry.model_copy(update={"state": STATE_DEAD_LETTERED}),
            reason=reason,
            error_type=error.__class__.__name__ if error is not None else None,
            error_message=str(error) if error is not None else None,
            context=context or {},
        )

    def _age_of(self, entry: QueueEntry) -> float:
        return max(self._scheduler.time() - entry.enqueued_at, 0.0)

    async def publish_metrics(self) -> QueueStats:
        """Sample ``stats()`` into the queue gauges."""
        stats = await self.stats()
        for queue, depth in stats.depths.items():
            QUEUE_DEPTH.labels(queue=queue).set(depth)
        DEAD_LETTER_COUNT.set(stats.dead_letter_count)
        OLDEST_ENTRY_AGE_SECONDS.set(stats.oldest_entry_age_seconds)
        return stats


class InMemoryEventStore(EventStore):
    """Single-process store guarded by an ``asyncio.Lock``."""

    def __init__(self, scheduler: Scheduler, *, dedup_ttl_seconds: int = 300, lease_seconds: float = 300):
        super().__init__(scheduler, dedup_ttl_seconds=dedup_ttl_seconds, lease_seconds=lease_seconds)
        self._lock = asyncio.Lock()
        self._seq = itertools.count()
        self._dedup = InMemoryDedupCache(scheduler, dedup_ttl_seconds)
        # Heap of (-priority, sequence, entry id); stale items are skipped on pop
        self._ready: list[tuple[int, int, str]] = []
        self._sequence: dict[str, int] = {}
        self._entries: dict[str, QueueEntry] = {}
        self._delayed: dict[str, float] = {}
        self._processing: dict[str, float] = {}
        self._dead: list[DeadLetterRecord] = []

    async def enqueue(self, event: InboundEvent, *, skip_dedup: bool = False) -> bool:
        async with self._lock:
            inserted = event.id not in self._entries
            if inserted and not skip_dedup:
                inserted = self._dedup.claim(compute_fingerprint(event))
            if inserted:
                self._sequence[event.id] = next(self._seq)
                self._entries[event.id] = QueueEntry(event=event, enqueued_at=self._scheduler.time())
                self._push_ready(event.id)
        self._observe_enqueue(event, inserted)
        return inserted

    async def dequeue(self) -> Optional[QueueEntry]:
        async with self._lock:
            self._promote_due()
            while self._ready:
                _, _, entry_id = heapq.heappop(self._ready)
                entry = self._entries.get(entry_id)
                if entry is None or entry.state != STATE_QUEUED or entry_id in self._delayed:
                    continue
                return self._claim(entry)
            return None

    async def move_to_processing(self, entry: QueueEntry) -> bool:
        async with self._lock:
            self._promote_due()
            current = self._entries.get(entry.id)
            if current is None or current.state != STATE_QUEUED or entry.id in self._delayed:
                return False
            self._claim(current)
            return True

    async def ack(self, entry: QueueEntry) -> None:
        async with self._lock:
            self._forget(entry.id)

    async def requeue_with_delay(self, entry: QueueEntry, delay_seconds: float) -> None:
        async with self._lock:
            not_before = self._scheduler.time() + max(delay_seconds, 0.0)
            self._processing.pop(entry.id, None)
            self._entries[entry.id] = entry.model_copy(update={"state": STATE_QUEUED, "not_before": not_before})
            self._sequence.setdefault(entry.id, next(self._seq))
            if delay_seconds > 0:
                self._delayed[entry.id] = not_before
            else:
                self._push_ready(entry.id)

    async def dead_letter(
        self,
        entry: QueueEntry,
        reason: str,
        *,
        error: Optional[BaseException] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> DeadLetterRecord:
        record = self._build_dead_letter(entry, reason, error, context)
        async with self._lock:
            self._forget(entry.id)
            self._dead.append(record)
        return record

    async def recover_expired(self) -> int:
        async with self._lock:
            now = self._scheduler.time()
            expired = [entry_id for entry_id, lease in self._processing.items() if lease <= now]
            for entry_id in expired:
                del self._processing[entry_id]
                entry = self._entries.get(entry_id)
                if entry is None:
                    continue
                self._entries[entry_id] = entry.model_copy(update={"state": STATE_QUEUED, "not_before": 0.0})
                self._push_ready(entry_id)
        if expired:
            ENTRIES_RECOVERED_TOTAL.inc(len(expired))
            logger.warning("Recovered %d entries with expired processing leases", len(expired))
        return len(expired)

    async def stats(self) -> QueueStats:
        async with self._lock:
            queued = [e for e in self._entries.values() if e.state == STATE_QUEUED]
            ready = [e for e in queued if e.id not in self._delayed]
            oldest = max((self._age_of(e) for e in queued), default=0.0)
            return QueueStats(
                depths={
                    QUEUE_EVENTS: len(ready),
                    QUEUE_DELAYED: len(self._delayed),
                    QUEUE_PROCESSING: len(self._processing),
                    QUEUE_DEAD_LETTER: len(self._dead),
                },
                dead_letter_count=len(self._dead),
                oldest_entry_age_seconds=oldest,
                duplicates_dropped=self.duplicates_dropped,
            )

    async def list_dead_letters(self, limit: int = 100, event_type: Optional[str] = None) -> list[DeadLetterRecord]:
        async with self._lock:
            records = [r for r in self._dead if event_type is None or r.entry.event.type.value == event_type]
            return records[:limit]

    async def replay_dead_letter(self, event_id: str) -> bool:
        async with self._lock:
            for idx, record in enumerate(self._dead):
                if record.entry.event.id == event_id:
                    del self._dead[idx]
                    break
            else:
                return False
        return await self.enqueue(record.entry.event, skip_dedup=True)

    # -------------------------
    # Internals (lock held)
    # -------------------------

    def _push_ready(self, entry_id: str) -> None:
        entry = self._entries[entry_id]
        heapq.heappush(self._ready, (-entry.event.priority, self._sequence[entry_id], entry_id))

    def _promote_due(self) -> None:
        now = self._scheduler.time()
        due = [entry_id for entry_id, not_before in self._delayed.items() if not_before <= now]
        for entry_id in due:
            del self._delayed[entry_id]
            self._push_ready(entry_id)

    def _claim(self, entry: QueueEntry) -> QueueEntry:
        claimed = entry.model_copy(update={"state": STATE_PROCESSING})
        self._entries[entry.id] = claimed
        self._processing[entry.id] = self._lease_until()
        return claimed

    def _forget(self, entry_id: str) -> None:
        self._entries.pop(entry_id, None)
        self._sequence.pop(entry_id, None)
        self._delayed.pop(entry_id, None)
        self._processing.pop(entry_id, None)


# -------------------------
# Redis backend
# -------------------------

# Priority tiers occupy disjoint score ranges; lower score is served first
_TIER_WIDTH = 10 ** 13

_ENQUEUE_LUA = """
if ARGV[5] ~= '1' then
  if not redis.call('SET', KEYS[1], ARGV[2], 'NX', 'EX', ARGV[1]) then
    return 0
  end
end
if redis.call('HEXISTS', KEYS[2], ARGV[2]) == 1 then
  return 0
end
local seq = redis.call('INCR', KEYS[5])
local score = string.format('%.0f', tonumber(ARGV[4]) + seq)
redis.call('HSET', KEYS[2], ARGV[2], ARGV[3])
redis.call('HSET', KEYS[3], ARGV[2], score)
redis.call('ZADD', KEYS[4], score, ARGV[2])
return 1
"""

_CLAIM_LUA = """
local due = redis.call('ZRANGEBYSCORE', KEYS[2], '-inf', ARGV[1], 'LIMIT', 0, 100)
for _, id in ipairs(due) do
  redis.call('ZREM', KEYS[2], id)
  local score = redis.call('HGET', KEYS[5], id)
  if score then
    redis.call('ZADD', KEYS[1], score, id)
  end
end
local head = redis.call('ZRANGE', KEYS[1], 0, 0)
if #head == 0 then
  return false
end
local id = head[1]
redis.call('ZREM', KEYS[1], id)
redis.call('ZADD', KEYS[3], ARGV[2], id)
return {id, redis.call('HGET', KEYS[4], id)}
"""

_MOVE_LUA = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 0 then
  return 0
end
redis.call('ZADD', KEYS[2], ARGV[2], ARGV[1])
return 1
"""

_RECOVER_LUA = """
local expired = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
for _, id in ipairs(expired) do
  redis.call('ZREM', KEYS[1], id)
  local score = redis.call('HGET', KEYS[3], id)
  if score then
    redis.call('ZADD', KEYS[2], score, id)
  end
end
return #expired
"""

_SEQUENCE_KEY = "webhook:sequence"


class RedisEventStore(EventStore):
    """Store shared by every worker process through one Redis instance.

    Layout:
    - ``webhook:events`` (zset): active entry ids scored by tier and sequence
    - ``webhook:delayed`` (zset): requeued ids scored by visibility time
    - ``webhook:processing`` (zset): claimed ids scored by lease expiry
    - ``webhook:dead_letter`` (list): JSON dead-letter records
    - ``webhook:entries`` / ``webhook:scores`` (hashes): entry bodies and tier scores
    - ``dedup:<fingerprint>``: dedup window keys with a TTL
    """

    def __init__(self, redis_client: Any, scheduler: Scheduler, *, dedup_ttl_seconds: int = 300, lease_seconds: float = 300):
        super().__init__(scheduler, dedup_ttl_seconds=dedup_ttl_seconds, lease_seconds=lease_seconds)
        self._redis = redis_client
        self._enqueue_script = redis_client.register_script(_ENQUEUE_LUA)
        self._claim_script = redis_client.register_script(_CLAIM_LUA)
        self._move_script = redis_client.register_script(_MOVE_LUA)
        self._recover_script = redis_client.register_script(_RECOVER_LUA)

    async def enqueue(self, event: InboundEvent, *, skip_dedup: bool = False) -> bool:
        entry = QueueEntry(event=event, enqueued_at=self._scheduler.time())
        tier_offset = (3 - event.priority) * _TIER_WIDTH
        result = await self._enqueue_script(
            keys=[DEDUP_KEY_PREFIX + compute_fingerprint(event), ENTRIES_KEY, SCORES_KEY, QUEUE_EVENTS, _SEQUENCE_KEY],
            args=[self.dedup_ttl_seconds, event.id, entry.model_dump_json(), tier_offset, "1" if skip_dedup else "0"],
        )
        inserted = int(result) == 1
        self._observe_enqueue(event, inserted)
        return inserted

    async def dequeue(self) -> Optional[QueueEntry]:
        while True:
            claimed = await self._claim_script(
                keys=[QUEUE_EVENTS, QUEUE_DELAYED, QUEUE_PROCESSING, ENTRIES_KEY, SCORES_KEY],
                args=[self._scheduler.time(), self._lease_until()],
            )
            if not claimed:
                return None
            entry_id = claimed[0]
            body = claimed[1] if len(claimed) > 1 else None
            if body is None:
                # Orphaned id without a body; drop it and keep looking
                logger.warning("Dropping queue id %s with no stored entry", entry_id)
                await self._redis.zrem(QUEUE_PROCESSING, entry_id)
                continue
            entry = QueueEntry.model_validate_json(body)
            return entry.model_copy(update={"state": STATE_PROCESSING})

    async def move_to_processing(self, entry: QueueEntry) -> bool:
        moved = await self._move_script(
            keys=[QUEUE_EVENTS, QUEUE_PROCESSING],
            args=[entry.id, self._lease_until()],
        )
        return int(moved) == 1

    async def ack(self, entry: QueueEntry) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(QUEUE_PROCESSING, entry.id)
            pipe.hdel(ENTRIES_KEY, entry.id)
            pipe.hdel(SCORES_KEY, entry.id)
            await pipe.execute()

    async def requeue_with_delay(self, entry: QueueEntry, delay_seconds: float) -> None:
        not_before = self._scheduler.time() + max(delay_seconds, 0.0)
        updated = entry.model_copy(update={"state": STATE_QUEUED, "not_before": not_before})
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(QUEUE_PROCESSING, entry.id)
            pipe.hset(ENTRIES_KEY, entry.id, updated.model_dump_json())
            pipe.zadd(QUEUE_DELAYED, {entry.id: not_before})
            await pipe.execute()

    async def dead_letter(
        self,
        entry: QueueEntry,
        reason: str,
        *,
        error: Optional[BaseException] = None,
        context: Optional[dict[str, Any]] = None,
    ) -> DeadLetterRecord:
        record = self._build_dead_letter(entry, reason, error, context)
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.zrem(QUEUE_PROCESSING, entry.id)
            pipe.zrem(QUEUE_EVENTS, entry.id)
            pipe.zrem(QUEUE_DELAYED, entry.id)
            pipe.hdel(ENTRIES_KEY, entry.id)
            pipe.hdel(SCORES_KEY, entry.id)
            pipe.rpush(QUEUE_DEAD_LETTER, record.model_dump_json())
            await pipe.execute()
        return record

    async def recover_expired(self) -> int:
        recovered = int(await self._recover_script(
            keys=[QUEUE_PROCESSING, QUEUE_EVENTS, SCORES_KEY],
            args=[self._scheduler.time()],
        ))
        if recovered:
            ENTRIES_RECOVERED_TOTAL.inc(recovered)
            logger.warning("Recovered %d entries with expired processing leases", recovered)
        return recovered

    async def stats(self) -> QueueStats:
        async with self._redis.pipeline(transaction=False) as pipe:
            pipe.zcard(QUEUE_EVENTS)
            pipe.zcard(QUEUE_DELAYED)
            pipe.zcard(QUEUE_PROCESSING)
            pipe.llen(QUEUE_DEAD_LETTER)
            events, delayed, processing, dead = await pipe.execute()
        return QueueStats(
            depths={
                QUEUE_EVENTS: int(events),
                QUEUE_DELAYED: int(delayed),
                QUEUE_PROCESSING: int(processing),
                QUEUE_DEAD_LETTER: int(dead),
            },
            dead_letter_count=int(dead),
            oldest_entry_age_seconds=await self._oldest_age(),
            duplicates_dropped=self.duplicates_dropped,
        )

    async def _oldest_age(self) -> float:
        # The head of each tier holds that tier's lowest sequence number
        heads: list[str] = []
        for tier in range(4):
            lo, hi = tier * _TIER_WIDTH, (tier + 1) * _TIER_WIDTH
            heads.extend(await self._redis.zrangebyscore(QUEUE_EVENTS, lo, f"({hi}", start=0, num=1))
        if not heads:
            return 0.0
        bodies = await self._redis.hmget(ENTRIES_KEY, heads)
        ages = [self._age_of(QueueEntry.model_validate_json(b)) for b in bodies if b]
        return max(ages, default=0.0)

    async def list_dead_letters(self, limit: int = 100, event_type: Optional[str] = None) -> list[DeadLetterRecord]:
        raw = await self._redis.lrange(QUEUE_DEAD_LETTER, 0, -1)
        records = [DeadLetterRecord.model_validate_json(item) for item in raw]
        if event_type is not None:
            records = [r for r in records if r.entry.event.type.value == event_type]
        return records[:limit]

    async def replay_dead_letter(self, event_id: str) -> bool:
        raw = await self._redis.lrange(QUEUE_DEAD_LETTER, 0, -1)
        for item in raw:
            record = DeadLetterRecord.model_validate_json(item)
            if record.entry.event.id != event_id:
                continue
            if int(await self._redis.lrem(QUEUE_DEAD_LETTER, 1, item)) == 0:
                # Another operator replayed it first
                return False
            return await self.enqueue(record.entry.event, skip_dedup=True)
        return False
