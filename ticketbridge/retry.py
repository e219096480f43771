"""Retry policy, failure classification and backoff helpers.

This module centralizes how the dispatcher (and the attachment upload stage)
decide between retrying, dead-lettering and giving up:
 - Failure classification by exception type (never by message text)
 - Exponential backoff with multiplicative jitter in [0.5, 1.5)
 - A bounded ``with_retry`` loop driven by an injectable scheduler

Key entrypoints:
 - ``backoff_delay_ms``: compute the delay for a given zero-based attempt
 - ``classify_failure``: map an exception to ``"transient"`` or ``"permanent"``
 - ``decide_retry``: determine whether to retry, the delay, and the new count
 - ``with_retry``: run an awaitable factory with bounded retries

Examples
--------
>>> import random
>>> rng = random.Random(7)
>>> 500 <= backoff_delay_ms(0, 1000, 30000, rng=rng) < 1500
True
>>> d = decide_retry(0, TimeoutError("slow"), RetryPolicy(max_retries=3))
>>> (d.should_retry, d.next_attempt_count)
(True, 1)
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal, Optional, TypeVar

from pydantic import ValidationError

from ticketbridge.constants import CAUSE_PERMANENT_FAILURE, CAUSE_RETRIES_EXHAUSTED
from ticketbridge.errors import PermanentError
from ticketbridge.scheduler import Scheduler


logger = logging.getLogger(__name__)

T = TypeVar("T")
FailureKind = Literal["transient", "permanent"]


# -------------------------
# Basic helpers
# -------------------------

def backoff_delay_ms(
    attempt: int,
    base_delay_ms: int = 1000,
    max_delay_ms: int = 30000,
    rng: Optional[random.Random] = None,
) -> int:
    """Return the jittered exponential delay in milliseconds for an attempt.

    The ``attempt`` is zero-based (the first failure has ``attempt == 0``).
    The raw delay ``min(max_delay_ms, base_delay_ms * 2**attempt)`` is scaled by
    a uniform factor in ``[0.5, 1.5)`` to avoid synchronized retries.

    Parameters
    ----------
    attempt: int
        Zero-based attempt counter.
    base_delay_ms: int
        Delay of the first retry before jitter.
    max_delay_ms: int
        Cap applied before jitter.
    rng: random.Random | None
        Source of jitter; the module-level generator when omitted.

    Returns
    -------
    int
        The computed delay in milliseconds.

    Examples
    --------
    >>> class Mid:
    ...     def uniform(self, a, b):
    ...         return 1.0
    >>> backoff_delay_ms(2, 1000, 30000, rng=Mid())
    4000
    >>> backoff_delay_ms(10, 1000, 30000, rng=Mid())  # capped
    30000
    """
    raw = min(max_delay_ms, base_delay_ms * (2 ** max(attempt, 0)))
    factor = (rng or random).uniform(0.5, 1.5)
    return int(raw * factor)


def classify_failure(exc: BaseException) -> FailureKind:
    """Map an exception to a dispatcher action by its type.

    ``PermanentError`` subclasses and pydantic ``ValidationError`` are
    permanent. Everything else, including unknown exceptions, is transient and
    therefore bounded by the retry budget.
    """
    if isinstance(exc, (PermanentError, ValidationError)):
        return "permanent"
    return "transient"


# -------------------------
# Policy and decision
# -------------------------

@dataclass
class RetryPolicy:
    """Retry policy applied to every queue entry.

    Attributes
    ----------
    max_retries: int
        Attempts allowed before the entry is dead-lettered.
    base_delay_ms: int
        Delay of the first retry before jitter.
    max_delay_ms: int
        Cap on the exponential delay before jitter.

    Examples
    --------
    >>> RetryPolicy(max_retries=3, base_delay_ms=1000, max_delay_ms=30000)
    RetryPolicy(max_retries=3, base_delay_ms=1000, max_delay_ms=30000)
    """
    max_retries: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
        )


@dataclass
class RetryDecision:
    """Decision computed for a failed entry.

    Attributes
    ----------
    should_retry: bool
        Whether the entry should be requeued.
    delay_ms: int
        Delay before the entry becomes visible again. ``0`` when not retrying.
    next_attempt_count: int
        Attempt count to persist on the entry, never above ``max_retries``.
    max_retries: int
        Effective max retries considered when making this decision.
    kind: str
        ``"transient"`` or ``"permanent"``.
    error_type: str
        The exception type name, for logs and dead-letter records.
    cause: str | None
        Dead-letter cause when not retrying.
    """
    should_retry: bool
    delay_ms: int
    next_attempt_count: int
    max_retries: int
    kind: FailureKind
    error_type: str
    cause: Optional[str] = None


def decide_retry(
    attempt_count: int,
    exc: BaseException,
    policy: RetryPolicy,
    rng: Optional[random.Random] = None,
) -> RetryDecision:
    """Decide retry behavior for a failed attempt.

    Parameters
    ----------
    attempt_count: int
        Failed attempts recorded on the entry before this one.
    exc: BaseException
        The failure raised by the handler.
    policy: RetryPolicy
        Limits and backoff parameters.
    rng: random.Random | None
        Jitter source.

    Returns
    -------
    RetryDecision
        The computed decision.

    Examples
    --------
    >>> from ticketbridge.errors import MalformedEventError
    >>> d = decide_retry(0, MalformedEventError("no ticket id"), RetryPolicy())
    >>> d.should_retry, d.cause
    (False, 'permanent_failure')
    >>> d = decide_retry(2, TimeoutError(), RetryPolicy(max_retries=3))
    >>> d.should_retry, d.next_attempt_count, d.cause
    (False, 3, 'retries_exhausted')
    """
    kind = classify_failure(exc)
    max_retries = max(policy.max_retries, 1)
    next_count = min(attempt_count + 1, max_retries)
    error_type = exc.__class__.__name__

    if kind == "permanent":
        return RetryDecision(False, 0, next_count, max_retries, kind, error_type, CAUSE_PERMANENT_FAILURE)
    if attempt_count + 1 >= max_retries:
        return RetryDecision(False, 0, next_count, max_retries, kind, error_type, CAUSE_RETRIES_EXHAUSTED)

    delay_ms = backoff_delay_ms(attempt_count, policy.base_delay_ms, policy.max_delay_ms, rng)
    return RetryDecision(True, delay_ms, next_count, max_retries, kind, error_type)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    policy: RetryPolicy,
    scheduler: Scheduler,
    description: str = "operation",
    rng: Optional[random.Random] = None,
) -> T:
    """Await ``operation()`` up to ``attempts`` times with jittered backoff.

    Permanent failures are raised immediately; the last transient failure is
    re-raised once attempts run out.

    Example
    -------
    >>> # await with_retry(lambda: client.send(msg), attempts=3,
    >>> #                  policy=RetryPolicy(), scheduler=AsyncioScheduler())
    """
    attempts = max(attempts, 1)
    for attempt in range(attempts):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if classify_failure(exc) == "permanent" or attempt + 1 >= attempts:
                raise
            delay_ms = backoff_delay_ms(attempt, policy.base_delay_ms, policy.max_delay_ms, rng)
            logger.warning(
                "%s failed (attempt %d/%d, %s: %s); retrying in %dms",
                description, attempt + 1, attempts, exc.__class__.__name__, exc, delay_ms,
            )
            await scheduler.sleep(delay_ms / 1000.0)
    raise AssertionError("unreachable")  # pragma: no cover
