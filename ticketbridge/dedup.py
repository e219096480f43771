"""Event fingerprints and the time-bounded dedup window.

The ticketing backend re-delivers webhooks on its own timeouts, so the same
logical event can arrive several times within seconds. A fingerprint of the
event identity is held for ``ttl`` seconds; an enqueue that finds a live
fingerprint is dropped.
"""

from __future__ import annotations

import hashlib
import json
import re
from typing import Any

from ticketbridge.models import InboundEvent
from ticketbridge.scheduler import Scheduler


_WS = re.compile(r"\s+")


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return _WS.sub(" ", value).strip()
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


def compute_fingerprint(event: InboundEvent) -> str:
    """Return a stable hash of (type, ticket id, normalized payload).

    The event id and enqueue timestamp are excluded so that a redelivered
    webhook, which gets a fresh id, maps to the same fingerprint.
    """
    document = {
        "type": event.type.value,
        "ticket_id": event.ticket_id,
        "payload": _normalize(event.payload),
    }
    canonical = json.dumps(document, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class InMemoryDedupCache:
    """Fingerprint -> expiry map; expired records are never consulted."""

    def __init__(self, scheduler: Scheduler, ttl_seconds: float = 300):
        self._scheduler = scheduler
        self.ttl_seconds = ttl_seconds
        self._expires: dict[str, float] = {}

    def claim(self, fingerprint: str) -> bool:
        """Record the fingerprint; return False if a live record already exists."""
        now = self._scheduler.time()
        expires_at = self._expires.get(fingerprint)
        if expires_at is not None and expires_at > now:
            return False
        self._expires[fingerprint] = now + self.ttl_seconds
        return True

    def contains(self, fingerprint: str) -> bool:
        expires_at = self._expires.get(fingerprint)
        return expires_at is not None and expires_at > self._scheduler.time()

    def purge_expired(self) -> int:
        now = self._scheduler.time()
        stale = [fp for fp, exp in self._expires.items() if exp <= now]
        for fp in stale:
            del self._expires[fp]
        return len(stale)

    def __len__(self) -> int:
        return len(self._expires)
