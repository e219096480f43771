"""Ticket-to-thread mapping storage.

- ``InMemoryMappingStore``: dict-backed, for tests and local runs
- ``SqlMappingStore``: canonical store on async SQLAlchemy
- ``RedisMappingCache``: fast-path lookup in front of the canonical store

Mappings are write-once: creating the same (ticket, thread) pair again is a
no-op, creating a different pair for a known ticket raises
``MappingConflictError``.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError

from ticketbridge.db import get_session
from ticketbridge.errors import MappingConflictError
from ticketbridge.models import TicketThreadMapping
from ticketbridge.orm_models import TicketThreadMappingRow


logger = logging.getLogger(__name__)

MAPPING_CACHE_PREFIX = "mapping:ticket:"


def _ensure_same_pair(existing: TicketThreadMapping, requested: TicketThreadMapping) -> TicketThreadMapping:
    if existing.thread_id != requested.thread_id:
        raise MappingConflictError(
            f"Ticket {requested.ticket_id} is already mapped to thread {existing.thread_id}, "
            f"refusing to remap to {requested.thread_id}"
        )
    return existing


class InMemoryMappingStore:
    def __init__(self, mappings: Optional[list[TicketThreadMapping]] = None):
        self._rows: dict[str, TicketThreadMapping] = {m.ticket_id: m for m in mappings or []}
        self.lookups = 0

    async def get_by_ticket_id(self, ticket_id: str) -> Optional[TicketThreadMapping]:
        self.lookups += 1
        return self._rows.get(ticket_id)

    async def create(self, mapping: TicketThreadMapping) -> TicketThreadMapping:
        existing = self._rows.get(mapping.ticket_id)
        if existing is not None:
            return _ensure_same_pair(existing, mapping)
        if any(row.thread_id == mapping.thread_id for row in self._rows.values()):
            raise MappingConflictError(f"Thread {mapping.thread_id} is already mapped to another ticket")
        self._rows[mapping.ticket_id] = mapping
        return mapping


class SqlMappingStore:
    """Canonical mapping store in the ``ticket_thread_mappings`` table."""

    def __init__(self, session_factory: Callable[[], Any] = get_session):
        self._session = session_factory

    async def get_by_ticket_id(self, ticket_id: str) -> Optional[TicketThreadMapping]:
        async with self._session() as session:
            row = await session.get(TicketThreadMappingRow, ticket_id)
            return TicketThreadMapping.model_validate(row) if row is not None else None

    async def create(self, mapping: TicketThreadMapping) -> TicketThreadMapping:
        async with self._session() as session:
            row = await session.get(TicketThreadMappingRow, mapping.ticket_id)
            if row is not None:
                return _ensure_same_pair(TicketThreadMapping.model_validate(row), mapping)
            session.add(TicketThreadMappingRow(
                ticket_id=mapping.ticket_id,
                thread_id=mapping.thread_id,
                discord_user_id=mapping.discord_user_id,
                customer_id=mapping.customer_id,
            ))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                # Lost a race with another writer, or the thread is taken
                existing = await self.get_by_ticket_id(mapping.ticket_id)
                if existing is None:
                    raise MappingConflictError(
                        f"Thread {mapping.thread_id} is already mapped to another ticket"
                    ) from None
                return _ensure_same_pair(existing, mapping)
        logger.info("Stored mapping ticket=%s thread=%s", mapping.ticket_id, mapping.thread_id)
        return mapping


class RedisMappingCache:
    """JSON mapping snapshots in Redis with a TTL; usable as a resolver fast path.

    Example:
        >>> # cache = RedisMappingCache(get_redis_client(), ttl_seconds=3600)
        >>> # await resolver.resolve_with_retry("T-1", fast_lookup=cache.get)
    """

    def __init__(self, redis_client: Any, ttl_seconds: int = 3600):
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds

    async def get(self, ticket_id: str) -> Optional[TicketThreadMapping]:
        raw = await self._redis.get(MAPPING_CACHE_PREFIX + ticket_id)
        return TicketThreadMapping.model_validate_json(raw) if raw else None

    async def put(self, mapping: TicketThreadMapping) -> None:
        await self._redis.set(MAPPING_CACHE_PREFIX + mapping.ticket_id, mapping.model_dump_json(), ex=self.ttl_seconds)
