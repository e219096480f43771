"""Ticket-to-thread resolution that tolerates the mapping-creation race.

Why this exists:
- A ticket's first webhook can arrive before the mapping row linking it to
  its chat thread is committed. Failing immediately would drop the message;
  retrying forever would hide real outages.

How it works:
- ``lookup`` returns a tagged outcome (``Found``, ``NotYetAvailable``,
  ``Fatal``) instead of raising for the expected "not there yet" case.
- ``resolve_with_retry`` retries only ``NotYetAvailable`` with exponential
  backoff, bounded by an attempt count and a time window. On exhaustion it
  raises ``ResolverExhaustedError`` carrying a diagnosis: if the attempts
  ran out well inside the window, the mapping is most likely still being
  written (race); otherwise the store is likely down or the ticket unknown.
- Problems with the thread itself (deleted, not a thread) and chat API
  errors are never retried here.

Example:
    >>> # resolver = ThreadResolver(SqlMappingStore(), discord, AsyncioScheduler())
    >>> # resolved = await resolver.resolve_with_retry("T-1", ResolveOptions(max_attempts=5))
    >>> # await discord.send_to_thread(resolved.thread, OutboundMessage(content="hi"))
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from ticketbridge.errors import MappingNotFoundError, ResolutionContext, ResolverExhaustedError, ThreadUnavailableError
from ticketbridge.metrics import RESOLVER_ATTEMPTS, RESOLVER_EXHAUSTED_TOTAL
from ticketbridge.models import TicketThreadMapping
from ticketbridge.ports import ChatPlatform, MappingStore, ThreadHandle
from ticketbridge.scheduler import Scheduler


logger = logging.getLogger(__name__)

FastLookup = Callable[[str], Awaitable[Optional[TicketThreadMapping]]]


@dataclass(frozen=True)
class Found:
    mapping: TicketThreadMapping


@dataclass(frozen=True)
class NotYetAvailable:
    ticket_id: str


@dataclass(frozen=True)
class Fatal:
    error: BaseException


LookupOutcome = Union[Found, NotYetAvailable, Fatal]


@dataclass(frozen=True)
class ResolvedThread:
    mapping: TicketThreadMapping
    thread: ThreadHandle
    attempts: int = 1


@dataclass
class ResolveOptions:
    """Retry budget for ``resolve_with_retry``.

    Attributes
    ----------
    max_attempts: int
        Lookups allowed, including the first one.
    base_delay_ms: int
        Wait after the first miss; doubles after each further miss.
    max_retry_window_ms: int
        Time budget; no new attempt starts once it is spent.
    max_delay_ms: int
        Cap on a single wait, before jitter.
    """
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_retry_window_ms: int = 10000
    max_delay_ms: int = 5000

    @classmethod
    def from_settings(cls, settings) -> "ResolveOptions":
        return cls(
            max_attempts=settings.resolver_max_attempts,
            base_delay_ms=settings.resolver_base_delay_ms,
            max_retry_window_ms=settings.resolver_max_retry_window_ms,
        )


class ThreadResolver:
    """Resolve ticket ids to live chat threads through injected collaborators."""

    def __init__(
        self,
        mappings: MappingStore,
        chat: ChatPlatform,
        scheduler: Scheduler,
        *,
        rng: Optional[random.Random] = None,
    ):
        self._mappings = mappings
        self._chat = chat
        self._scheduler = scheduler
        self._rng = rng or random.Random()

    async def lookup(self, ticket_id: str, fast_lookup: Optional[FastLookup] = None) -> LookupOutcome:
        mapping: Optional[TicketThreadMapping] = None
        if fast_lookup is not None:
            try:
                mapping = await fast_lookup(ticket_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                # The canonical store still answers when the fast path is down
                logger.warning("Fast mapping lookup failed for ticket %s: %s", ticket_id, exc)
        if mapping is None:
            try:
                mapping = await self._mappings.get_by_ticket_id(ticket_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                return Fatal(exc)
        if mapping is None:
            return NotYetAvailable(ticket_id)
        return Found(mapping)

    async def resolve(self, ticket_id: str, fast_lookup: Optional[FastLookup] = None) -> ResolvedThread:
        """Single-shot resolution; a missing mapping raises ``MappingNotFoundError``."""
        outcome = await self.lookup(ticket_id, fast_lookup)
        if isinstance(outcome, Fatal):
            raise outcome.error
        if isinstance(outcome, NotYetAvailable):
            raise MappingNotFoundError(ticket_id)
        thread = await self._open_thread(outcome.mapping)
        return ResolvedThread(outcome.mapping, thread, attempts=1)

    async def resolve_with_retry(
        self,
        ticket_id: str,
        options: Optional[ResolveOptions] = None,
        fast_lookup: Optional[FastLookup] = None,
    ) -> ResolvedThread:
        options = options or ResolveOptions()
        started = self._scheduler.time()
        attempts = 0
        last_error: Optional[BaseException] = None

        while attempts < max(options.max_attempts, 1):
            attempts += 1
            outcome = await self.lookup(ticket_id, fast_lookup)
            if isinstance(outcome, Fatal):
                raise outcome.error
            if isinstance(outcome, Found):
                thread = await self._open_thread(outcome.mapping)
                RESOLVER_ATTEMPTS.observe(attempts)
                if attempts > 1:
                    logger.info("Resolved thread for ticket %s after %d attempts", ticket_id, attempts)
                return ResolvedThread(outcome.mapping, thread, attempts)

            last_error = MappingNotFoundError(ticket_id)
            elapsed_ms = (self._scheduler.time() - started) * 1000
            if attempts >= options.max_attempts or elapsed_ms >= options.max_retry_window_ms:
                break
            delay_ms = self._delay_ms(attempts - 1, options)
            logger.debug("Mapping for ticket %s not available yet (attempt %d/%d); waiting %.0fms",
                         ticket_id, attempts, options.max_attempts, delay_ms)
            await self._scheduler.sleep(delay_ms / 1000.0)

        total_ms = (self._scheduler.time() - started) * 1000
        context = ResolutionContext(
            ticket_id=ticket_id,
            attempts_made=attempts,
            total_retry_time_ms=total_ms,
            likely_race_condition=total_ms < options.max_retry_window_ms,
            original_error=str(last_error) if last_error is not None else None,
        )
        RESOLVER_ATTEMPTS.observe(attempts)
        if context.likely_race_condition:
            RESOLVER_EXHAUSTED_TOTAL.labels(diagnosis="race").inc()
            logger.warning(
                "Ticket %s has no thread mapping after %d attempts in %.0fms; "
                "probably created moments ago and not yet persisted",
                ticket_id, attempts, total_ms,
            )
        else:
            RESOLVER_EXHAUSTED_TOTAL.labels(diagnosis="outage").inc()
            logger.error(
                "Ticket %s has no thread mapping after %d attempts over the full %dms window; "
                "mapping store may be unavailable or the ticket was not created from chat",
                ticket_id, attempts, options.max_retry_window_ms,
            )
        raise ResolverExhaustedError(context)

    def _delay_ms(self, attempt: int, options: ResolveOptions) -> float:
        raw = min(options.max_delay_ms, options.base_delay_ms * (2 ** attempt))
        return raw + self._rng.uniform(0, options.base_delay_ms * 0.1)

    async def _open_thread(self, mapping: TicketThreadMapping) -> ThreadHandle:
        thread = await self._chat.fetch_thread(mapping.thread_id)
        if thread is None:
            raise ThreadUnavailableError(mapping.ticket_id, mapping.thread_id, "thread not found")
        if not thread.is_thread:
            raise ThreadUnavailableError(mapping.ticket_id, mapping.thread_id, "channel is not a thread")
        return thread
