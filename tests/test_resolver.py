import random

import pytest

from bridge_fakes import FakeChat, SlowMappingStore
from ticketbridge.errors import (
    ChatPlatformError,
    MappingNotFoundError,
    ResolverExhaustedError,
    ThreadUnavailableError,
)
from ticketbridge.models import TicketThreadMapping
from ticketbridge.ports import ThreadHandle
from ticketbridge.resolver import Fatal, Found, NotYetAvailable, ResolveOptions, ThreadResolver
from ticketbridge.scheduler import VirtualScheduler


MAPPING = TicketThreadMapping(ticket_id="T-1", thread_id="900")


def _resolver(store, chat=None, sched=None):
    chat = chat or FakeChat([ThreadHandle(id="900")])
    return ThreadResolver(store, chat, sched or VirtualScheduler(), rng=random.Random(1))


@pytest.mark.asyncio
async def test_lookup_outcomes():
    assert isinstance(await _resolver(SlowMappingStore(MAPPING)).lookup("T-1"), Found)
    assert isinstance(await _resolver(SlowMappingStore(None)).lookup("T-1"), NotYetAvailable)
    outcome = await _resolver(SlowMappingStore(None, error=RuntimeError("db down"))).lookup("T-1")
    assert isinstance(outcome, Fatal) and str(outcome.error) == "db down"


@pytest.mark.asyncio
async def test_found_on_first_attempt_does_not_sleep():
    sched = VirtualScheduler()
    store = SlowMappingStore(MAPPING)
    resolved = await _resolver(store, sched=sched).resolve_with_retry("T-1", ResolveOptions(max_attempts=5))
    assert resolved.thread.id == "900"
    assert resolved.attempts == 1
    assert store.lookups == 1
    assert sched.sleeps == []


@pytest.mark.asyncio
async def test_mapping_appearing_on_nth_lookup_takes_n_calls():
    sched = VirtualScheduler()
    store = SlowMappingStore(MAPPING, misses=2)
    options = ResolveOptions(max_attempts=5, base_delay_ms=1000, max_retry_window_ms=30000)

    resolved = await _resolver(store, sched=sched).resolve_with_retry("T-1", options)
    assert resolved.attempts == 3
    assert store.lookups == 3
    assert len(sched.sleeps) == 2
    # exponential base plus at most 10% of base as jitter
    assert 1.0 <= sched.sleeps[0] <= 1.1
    assert 2.0 <= sched.sleeps[1] <= 2.1


@pytest.mark.asyncio
async def test_exhaustion_inside_window_is_diagnosed_as_race():
    sched = VirtualScheduler()
    store = SlowMappingStore(None)
    options = ResolveOptions(max_attempts=3, base_delay_ms=1000, max_retry_window_ms=10000)

    with pytest.raises(ResolverExhaustedError) as info:
        await _resolver(store, sched=sched).resolve_with_retry("T-1", options)
    context = info.value.context
    assert context.attempts_made == 3
    assert store.lookups == 3
    assert context.total_retry_time_ms == pytest.approx(sum(sched.sleeps) * 1000)
    assert context.likely_race_condition is (context.total_retry_time_ms < options.max_retry_window_ms)
    assert context.likely_race_condition is True
    assert "likely race condition" in str(info.value)


@pytest.mark.asyncio
async def test_exhaustion_after_full_window_is_diagnosed_as_outage():
    sched = VirtualScheduler()
    store = SlowMappingStore(None)
    options = ResolveOptions(max_attempts=10, base_delay_ms=1000, max_retry_window_ms=5000, max_delay_ms=5000)

    with pytest.raises(ResolverExhaustedError) as info:
        await _resolver(store, sched=sched).resolve_with_retry("T-1", options)
    context = info.value.context
    assert context.attempts_made == 4
    assert context.likely_race_condition is False
    assert context.to_dict()["ticket_id"] == "T-1"


@pytest.mark.asyncio
async def test_missing_thread_is_not_retried():
    store = SlowMappingStore(MAPPING)
    with pytest.raises(ThreadUnavailableError) as info:
        await _resolver(store, chat=FakeChat()).resolve_with_retry("T-1", ResolveOptions(max_attempts=5))
    assert info.value.thread_id == "900"
    assert store.lookups == 1


@pytest.mark.asyncio
async def test_channel_that_is_not_a_thread_is_rejected():
    chat = FakeChat([ThreadHandle(id="900", is_thread=False)])
    with pytest.raises(ThreadUnavailableError):
        await _resolver(SlowMappingStore(MAPPING), chat=chat).resolve("T-1")


@pytest.mark.asyncio
async def test_chat_errors_propagate_without_retry():
    chat = FakeChat([ThreadHandle(id="900")])
    chat.fetch_error = ChatPlatformError("502", status_code=502)
    store = SlowMappingStore(MAPPING)
    with pytest.raises(ChatPlatformError):
        await _resolver(store, chat=chat).resolve_with_retry("T-1", ResolveOptions(max_attempts=5))
    assert store.lookups == 1


@pytest.mark.asyncio
async def test_store_failure_is_fatal():
    sched = VirtualScheduler()
    store = SlowMappingStore(MAPPING, error=RuntimeError("db down"))
    with pytest.raises(RuntimeError):
        await _resolver(store, sched=sched).resolve_with_retry("T-1", ResolveOptions(max_attempts=5))
    assert store.lookups == 1
    assert sched.sleeps == []


@pytest.mark.asyncio
async def test_single_shot_resolve_raises_when_missing():
    with pytest.raises(MappingNotFoundError) as info:
        await _resolver(SlowMappingStore(None)).resolve("T-1")
    assert not isinstance(info.value, ResolverExhaustedError)


@pytest.mark.asyncio
async def test_fast_lookup_skips_store_and_falls_back_on_error():
    store = SlowMappingStore(MAPPING)
    resolver = _resolver(store)

    async def cached(ticket_id):
        return MAPPING

    async def broken(ticket_id):
        raise ConnectionError("redis down")

    assert (await resolver.resolve("T-1", cached)).mapping == MAPPING
    assert store.lookups == 0
    assert (await resolver.resolve("T-1", broken)).mapping == MAPPING
    assert store.lookups == 1
