"""In-process stand-ins for the chat platform, file hosts and mapping store."""

import asyncio
from typing import Optional, Union

from ticketbridge.models import OutboundMessage, PriorMessage, TicketThreadMapping
from ticketbridge.ports import ThreadHandle


PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 24
JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 28
GIF = b"GIF89a" + b"\x00" * 26
WEBP = b"RIFF\x00\x00\x00\x00WEBPVP8 " + b"\x00" * 16


class FakeChat:
    def __init__(self, threads: Optional[list[ThreadHandle]] = None):
        self.threads = {t.id: t for t in threads or []}
        self.messages: dict[str, list[PriorMessage]] = {}
        self.sent: list[tuple[str, OutboundMessage]] = []
        self.archived: list[str] = []
        self.send_errors: list[Exception] = []
        self.archive_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.fetches = 0

    async def fetch_thread(self, thread_id: str) -> Optional[ThreadHandle]:
        self.fetches += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.threads.get(thread_id)

    async def send_to_thread(self, thread: ThreadHandle, message: OutboundMessage) -> str:
        if self.send_errors:
            raise self.send_errors.pop(0)
        self.sent.append((thread.id, message))
        message_id = f"m{len(self.sent)}"
        self.messages.setdefault(thread.id, []).append(PriorMessage(id=message_id, content=message.content or ""))
        return message_id

    async def recent_messages(self, thread: ThreadHandle, limit: int = 50):
        return list(self.messages.get(thread.id, []))[-limit:]

    async def archive_thread(self, thread: ThreadHandle) -> None:
        if self.archive_error is not None:
            raise self.archive_error
        self.archived.append(thread.id)


class FakeFileSource:
    """Serves bodies from a dict; an exception value is raised, ``None`` hangs."""

    def __init__(self, bodies: dict[str, Union[bytes, Exception, None]], chunk_size: int = 8):
        self.bodies = bodies
        self.chunk_size = chunk_size
        self.requested: list[str] = []

    async def stream(self, url: str):
        self.requested.append(url)
        body = self.bodies[url]
        if body is None:
            await asyncio.sleep(30)
            return
        if isinstance(body, Exception):
            raise body
        for start in range(0, len(body), self.chunk_size):
            yield body[start:start + self.chunk_size]


class SlowMappingStore:
    """Returns no mapping for the first ``misses`` lookups."""

    def __init__(self, mapping: Optional[TicketThreadMapping], misses: int = 0, error: Optional[Exception] = None):
        self.mapping = mapping
        self.misses = misses
        self.error = error
        self.lookups = 0

    async def get_by_ticket_id(self, ticket_id: str) -> Optional[TicketThreadMapping]:
        self.lookups += 1
        if self.error is not None:
            raise self.error
        if self.lookups <= self.misses or self.mapping is None or self.mapping.ticket_id != ticket_id:
            return None
        return self.mapping

    async def create(self, mapping: TicketThreadMapping) -> TicketThreadMapping:
        self.mapping = mapping
        return mapping
