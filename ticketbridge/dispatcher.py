"""Queue consumer that routes entries to handlers and settles their outcome.

Lifecycle of one entry:
- ``queued -> processing``: claimed from the store with a lease
- ``processing -> acked``: the handler returned
- ``processing -> requeued -> queued``: transient failure, jittered backoff
- ``processing -> dead_lettered``: permanent failure, or retries exhausted

Outcomes are decided by exception type (``retry.classify_failure``), never
by inspecting error messages.
"""

from __future__ import annotations

import asyncio
import datetime as _dt
import logging
import random
import time
from typing import Any, Mapping, Optional

from ticketbridge.constants import (
    CAUSE_NO_HANDLER,
    STATE_ACKED,
    STATE_DEAD_LETTERED,
    STATE_REQUEUED,
)
from ticketbridge.errors import ResolverExhaustedError, ThreadUnavailableError
from ticketbridge.handlers import Handler
from ticketbridge.metrics import (
    EVENT_PROCESS_LATENCY_SECONDS,
    EVENTS_DEAD_LETTERED_TOTAL,
    EVENTS_PROCESSED_TOTAL,
    EVENTS_RETRIED_TOTAL,
)
from ticketbridge.models import EventType, QueueEntry
from ticketbridge.retry import RetryPolicy, decide_retry
from ticketbridge.scheduler import Scheduler
from ticketbridge.store import EventStore
from ticketbridge.tracing import get_tracer


logger = logging.getLogger(__name__)


def _probable_cause(exc: Optional[BaseException]) -> str:
    if isinstance(exc, ResolverExhaustedError):
        return "mapping_race" if exc.context.likely_race_condition else "mapping_missing_or_store_outage"
    if isinstance(exc, ThreadUnavailableError):
        return "thread_unavailable"
    return exc.__class__.__name__ if exc is not None else "unknown"


class Dispatcher:
    """Pull entries from an ``EventStore`` and run the registered handlers.

    Concurrency model:
    - At most ``concurrency`` handlers run at once (semaphore)
    - Ordering is best-effort only; handlers are idempotent through the
      reconciliation layer

    Example:
    ```python
    dispatcher = Dispatcher(store, handlers.registry(), AsyncioScheduler(), concurrency=3)
    await dispatcher.run()        # until dispatcher.stop()
    ```
    """

    def __init__(
        self,
        store: EventStore,
        handlers: Mapping[EventType, Handler],
        scheduler: Scheduler,
        *,
        policy: Optional[RetryPolicy] = None,
        concurrency: int = 3,
        poll_interval_s: float = 1.0,
        recovery_interval_s: float = 30.0,
        metrics_interval_s: float = 2.0,
        rng: Optional[random.Random] = None,
    ):
        self._store = store
        self._handlers = dict(handlers)
        self._scheduler = scheduler
        self.policy = policy or RetryPolicy()
        self.concurrency = max(concurrency, 1)
        self.poll_interval_s = poll_interval_s
        self.recovery_interval_s = recovery_interval_s
        self.metrics_interval_s = metrics_interval_s
        self._rng = rng
        self._stopping = asyncio.Event()
        self._tracer = get_tracer("ticket-bridge")

    # -------------------------
    # Single entry
    # -------------------------

    async def process(self, entry: QueueEntry) -> str:
        """Run the handler for a claimed entry and settle it; return the new state."""
        event = entry.event
        event_type = event.type.value
        start_ts = time.perf_counter()
        first_attempt_at = entry.first_attempt_at or _dt.datetime.fromtimestamp(
            self._scheduler.time(), tz=_dt.timezone.utc
        )
        handler = self._handlers.get(event.type)
        try:
            if handler is None:
                logger.error("No handler registered for event type %s (event %s)", event_type, event.id)
                await self._dead_letter(entry, CAUSE_NO_HANDLER, None, first_attempt_at, entry.attempt_count)
                return STATE_DEAD_LETTERED
            try:
                with self._tracer.start_as_current_span("handle_event") as span:
                    span.set_attribute("event_id", event.id)
                    span.set_attribute("event_type", event_type)
                    span.set_attribute("ticket_id", event.ticket_id)
                    span.set_attribute("attempt", entry.attempt_count + 1)
                    await handler(event)
            except asyncio.CancelledError:
                # Left in processing; lease expiry returns it to the queue
                raise
            except Exception as exc:  # noqa: BLE001
                return await self._on_failure(entry, exc, first_attempt_at)

            await self._store.ack(entry)
            EVENTS_PROCESSED_TOTAL.labels(status="acked", type=event_type).inc()
            logger.info("Processed event %s type=%s ticket=%s attempt=%d",
                        event.id, event_type, event.ticket_id, entry.attempt_count + 1)
            return STATE_ACKED
        finally:
            EVENT_PROCESS_LATENCY_SECONDS.labels(type=event_type).observe(time.perf_counter() - start_ts)

    async def _on_failure(self, entry: QueueEntry, exc: Exception, first_attempt_at: _dt.datetime) -> str:
        event = entry.event
        decision = decide_retry(entry.attempt_count, exc, self.policy, self._rng)
        updated = entry.model_copy(update={
            "attempt_count": decision.next_attempt_count,
            "first_attempt_at": first_attempt_at,
            "last_error": f"{decision.error_type}: {exc}",
        })

        if decision.should_retry:
            await self._store.requeue_with_delay(updated, decision.delay_ms / 1000.0)
            EVENTS_RETRIED_TOTAL.labels(type=event.type.value).inc()
            EVENTS_PROCESSED_TOTAL.labels(status="requeued", type=event.type.value).inc()
            logger.warning("Event %s type=%s failed (%s: %s); retry %d/%d in %dms",
                           event.id, event.type.value, decision.error_type, exc,
                           decision.next_attempt_count, decision.max_retries, decision.delay_ms)
            return STATE_REQUEUED

        await self._dead_letter(updated, decision.cause or decision.kind, exc, first_attempt_at, decision.next_attempt_count)
        return STATE_DEAD_LETTERED

    async def _dead_letter(
        self,
        entry: QueueEntry,
        cause: str,
        exc: Optional[BaseException],
        first_attempt_at: _dt.datetime,
        attempts: int,
    ) -> None:
        event = entry.event
        elapsed = max(self._scheduler.time() - first_attempt_at.timestamp(), 0.0)
        context: dict[str, Any] = {
            "attempts_made": attempts,
            "max_retries": self.policy.max_retries,
            "elapsed_seconds": round(elapsed, 3),
            "probable_cause": _probable_cause(exc),
        }
        if isinstance(exc, ResolverExhaustedError):
            context["resolution"] = exc.context.to_dict()
        await self._store.dead_letter(entry, cause, error=exc, context=context)
        EVENTS_DEAD_LETTERED_TOTAL.labels(type=event.type.value, cause=cause).inc()
        EVENTS_PROCESSED_TOTAL.labels(status="dead_lettered", type=event.type.value).inc()
        logger.error("Dead-lettered event %s type=%s ticket=%s cause=%s after %d attempts: %s",
                     event.id, event.type.value, event.ticket_id, cause, attempts, exc)

    async def run_once(self) -> Optional[str]:
        """Claim and process one entry; return its new state, or None if idle."""
        entry = await self._store.dequeue()
        if entry is None:
            return None
        return await self.process(entry)

    async def drain(self, max_entries: Optional[int] = None) -> int:
        """Process visible entries sequentially until none remain."""
        processed = 0
        while max_entries is None or processed < max_entries:
            if await self.run_once() is None:
                break
            processed += 1
        return processed

    # -------------------------
    # Long-running loop
    # -------------------------

    async def run(self) -> None:
        """Consume until ``stop()``; in-flight handlers finish before returning."""
        self._stopping.clear()
        sem = asyncio.Semaphore(self.concurrency)
        inflight: set[asyncio.Task] = set()
        background = [
            asyncio.create_task(self._sample_queue_depth()),
            asyncio.create_task(self._recovery_loop()),
        ]
        logger.info("Dispatcher started (concurrency=%d, max_retries=%d)", self.concurrency, self.policy.max_retries)
        try:
            while not self._stopping.is_set():
                await sem.acquire()
                try:
                    entry = await self._store.dequeue()
                except Exception:  # noqa: BLE001
                    logger.exception("Dequeue failed; backing off")
                    entry = None
                if entry is None:
                    sem.release()
                    await self._wait_or_stop(self.poll_interval_s)
                    continue
                task = asyncio.create_task(self._run_entry(entry, sem))
                inflight.add(task)
                task.add_done_callback(inflight.discard)
        finally:
            for task in background:
                task.cancel()
            if inflight:
                await asyncio.gather(*inflight, return_exceptions=True)
            logger.info("Dispatcher stopped")

    def stop(self) -> None:
        self._stopping.set()

    async def _run_entry(self, entry: QueueEntry, sem: asyncio.Semaphore) -> None:
        try:
            await self.process(entry)
        except Exception:  # noqa: BLE001
            # Store failure while settling; the processing lease will expire
            logger.exception("Failed to settle event %s", entry.id)
        finally:
            sem.release()

    async def _wait_or_stop(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _recovery_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await self._store.recover_expired()
            except Exception:  # noqa: BLE001
                logger.exception("Recovery sweep failed")
            await self._wait_or_stop(self.recovery_interval_s)

    async def _sample_queue_depth(self) -> None:
        """Periodically poll queue depth and update the gauges."""
        while not self._stopping.is_set():
            try:
                await self._store.publish_metrics()
            except Exception:  # noqa: BLE001
                logger.exception("Queue depth sampling failed")
            await self._wait_or_stop(self.metrics_interval_s)
