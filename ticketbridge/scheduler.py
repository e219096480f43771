"""Injectable clock and sleep used for every backoff and lease in the bridge.

Components never call ``time.time()`` or ``asyncio.sleep()`` directly; they
take a scheduler so tests can run retry schedules in virtual time.

Example:
    >>> sched = VirtualScheduler(start=100.0)
    >>> sched.advance(5)
    >>> sched.time()
    105.0
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol


class Scheduler(Protocol):
    def time(self) -> float:
        """Current wall-clock time in epoch seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds``."""
        ...


class AsyncioScheduler:
    """Real time backed by the running event loop."""

    def time(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))


class VirtualScheduler:
    """Manually driven clock; ``sleep`` advances time instantly and is recorded.

    Properties:
    - ``sleeps``: every requested sleep duration, in call order
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = float(start)
        self.sleeps: list[float] = []

    def time(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        seconds = max(float(seconds), 0.0)
        self.sleeps.append(seconds)
        self._now += seconds
        # Still yield so concurrent tasks interleave as they would for real
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self._now += float(seconds)
