"""Narrow interfaces for the collaborators the bridge talks to.

Everything outside the reliability pipeline (ticket database, chat API,
remote file hosts) is reached through one of these protocols and injected
through constructors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol, Sequence

from ticketbridge.models import OutboundMessage, PriorMessage, TicketThreadMapping


@dataclass(frozen=True)
class ThreadHandle:
    """A chat channel as returned by the platform."""

    id: str
    is_thread: bool = True
    name: Optional[str] = None
    archived: bool = False


class MappingStore(Protocol):
    async def get_by_ticket_id(self, ticket_id: str) -> Optional[TicketThreadMapping]:
        ...

    async def create(self, mapping: TicketThreadMapping) -> TicketThreadMapping:
        """Persist a new mapping; raises ``MappingConflictError`` on a different pair."""
        ...


class ChatPlatform(Protocol):
    async def fetch_thread(self, thread_id: str) -> Optional[ThreadHandle]:
        """Return the channel, or None when it no longer exists."""
        ...

    async def send_to_thread(self, thread: ThreadHandle, message: OutboundMessage) -> str:
        """Post a message (with optional files); return the new message id."""
        ...

    async def recent_messages(self, thread: ThreadHandle, limit: int = 50) -> Sequence[PriorMessage]:
        ...

    async def archive_thread(self, thread: ThreadHandle) -> None:
        ...


class RemoteFileSource(Protocol):
    def stream(self, url: str) -> AsyncIterator[bytes]:
        """Yield the body of ``url`` in chunks; raise on non-success responses."""
        ...
