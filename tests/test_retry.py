import random

import pytest
from pydantic import ValidationError

from ticketbridge.errors import (
    ChatPermissionError,
    ChatPlatformError,
    MalformedEventError,
    MappingNotFoundError,
    ThreadUnavailableError,
)
from ticketbridge.models import InboundEvent
from ticketbridge.retry import RetryPolicy, backoff_delay_ms, classify_failure, decide_retry, with_retry
from ticketbridge.scheduler import VirtualScheduler


class FixedJitter:
    def __init__(self, factor):
        self.factor = factor

    def uniform(self, a, b):
        return self.factor


def test_backoff_is_exponential_capped_and_jittered():
    mid = FixedJitter(1.0)
    assert [backoff_delay_ms(n, 1000, 30000, mid) for n in range(6)] == [1000, 2000, 4000, 8000, 16000, 30000]
    assert backoff_delay_ms(0, 1000, 30000, FixedJitter(0.5)) == 500
    rng = random.Random(3)
    for attempt in range(8):
        raw = min(30000, 1000 * 2 ** attempt)
        assert raw * 0.5 <= backoff_delay_ms(attempt, 1000, 30000, rng) < raw * 1.5


def test_classify_failure_by_type():
    with pytest.raises(ValidationError) as info:
        InboundEvent(type="message_created", ticket_id="")
    assert classify_failure(info.value) == "permanent"
    assert classify_failure(MalformedEventError("x")) == "permanent"
    assert classify_failure(ChatPermissionError("403")) == "permanent"
    assert classify_failure(ThreadUnavailableError("T", "1", "gone")) == "permanent"
    assert classify_failure(ChatPlatformError("503")) == "transient"
    assert classify_failure(MappingNotFoundError("T")) == "transient"
    assert classify_failure(TimeoutError()) == "transient"
    assert classify_failure(RuntimeError("unknown")) == "transient"


def test_decide_retry_counts_and_caps():
    policy = RetryPolicy(max_retries=3, base_delay_ms=1000)
    d = decide_retry(0, TimeoutError(), policy, FixedJitter(1.0))
    assert (d.should_retry, d.delay_ms, d.next_attempt_count) == (True, 1000, 1)
    d = decide_retry(1, TimeoutError(), policy, FixedJitter(1.0))
    assert (d.should_retry, d.delay_ms, d.next_attempt_count) == (True, 2000, 2)
    d = decide_retry(2, TimeoutError(), policy)
    assert (d.should_retry, d.next_attempt_count, d.cause) == (False, 3, "retries_exhausted")
    d = decide_retry(5, TimeoutError(), policy)
    assert d.next_attempt_count == 3


def test_decide_retry_permanent_never_retries():
    d = decide_retry(0, MalformedEventError("bad"), RetryPolicy())
    assert d.should_retry is False
    assert d.delay_ms == 0
    assert d.cause == "permanent_failure"
    assert d.error_type == "MalformedEventError"


@pytest.mark.asyncio
async def test_with_retry_recovers_from_transient_errors():
    sched = VirtualScheduler()
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ChatPlatformError("502")
        return "ok"

    result = await with_retry(flaky, attempts=3, policy=RetryPolicy(base_delay_ms=100),
                              scheduler=sched, rng=FixedJitter(1.0))
    assert result == "ok"
    assert sched.sleeps == [0.1, 0.2]


@pytest.mark.asyncio
async def test_with_retry_reraises_last_and_permanent_errors():
    sched = VirtualScheduler()

    async def always_down():
        raise ChatPlatformError("503")

    with pytest.raises(ChatPlatformError):
        await with_retry(always_down, attempts=2, policy=RetryPolicy(), scheduler=sched)
    assert len(sched.sleeps) == 1

    async def refused():
        raise ChatPermissionError("403")

    with pytest.raises(ChatPermissionError):
        await with_retry(refused, attempts=5, policy=RetryPolicy(), scheduler=sched)
    assert len(sched.sleeps) == 1
