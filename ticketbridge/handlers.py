"""Event handlers that deliver ticket activity into chat threads.

Handlers contain the business logic only. They either return (success) or
raise one of the ``ticketbridge.errors`` types; retrying, dead-lettering
and acking are the dispatcher's job.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from ticketbridge.attachments import AttachmentDescriptor, AttachmentPipeline
from ticketbridge.constants import CLOSING_STATUSES, STATUS_COLORS
from ticketbridge.errors import MalformedEventError
from ticketbridge.mapping_store import RedisMappingCache
from ticketbridge.models import EventType, InboundEvent, OutboundMessage, TicketThreadMapping
from ticketbridge.ports import ChatPlatform, MappingStore
from ticketbridge.reconcile import (
    contains_chat_attachments,
    decode_html_entities,
    is_duplicate_message,
    process_quoted_content,
)
from ticketbridge.resolver import ResolvedThread, ResolveOptions, ThreadResolver


logger = logging.getLogger(__name__)

Handler = Callable[[InboundEvent], Awaitable[None]]


class BridgeHandlers:
    """One coroutine per ``EventType``, wired with injected collaborators.

    Example:
    ```python
    handlers = BridgeHandlers(resolver, discord, pipeline, SqlMappingStore())
    dispatcher = Dispatcher(store, handlers.registry(), scheduler)
    ```
    """

    def __init__(
        self,
        resolver: ThreadResolver,
        chat: ChatPlatform,
        pipeline: AttachmentPipeline,
        mappings: MappingStore,
        *,
        resolve_options: Optional[ResolveOptions] = None,
        mapping_cache: Optional[RedisMappingCache] = None,
        recent_message_limit: int = 50,
    ):
        self._resolver = resolver
        self._chat = chat
        self._pipeline = pipeline
        self._mappings = mappings
        self._resolve_options = resolve_options or ResolveOptions(max_attempts=5, base_delay_ms=2000, max_retry_window_ms=30000)
        self._cache = mapping_cache
        self._recent_limit = recent_message_limit

    def registry(self) -> dict[EventType, Handler]:
        return {
            EventType.MESSAGE_CREATED: self.handle_message,
            EventType.ATTACHMENT: self.handle_attachment,
            EventType.CONVERSATION_UPDATED: self.handle_conversation_updated,
            EventType.THREAD_CREATE: self.handle_thread_create,
        }

    async def handle_message(self, event: InboundEvent) -> None:
        payload = event.payload
        content = decode_html_entities(payload.get("content"))
        if not content.strip():
            logger.debug("Message event %s for ticket %s has no text", event.id, event.ticket_id)
            return
        if contains_chat_attachments(content):
            # Echo of a chat-side upload; posting it again would loop
            logger.debug("Skipping message with chat attachments for ticket %s", event.ticket_id)
            return

        resolved = await self._resolve(event.ticket_id, retry=True)
        prior = await self._chat.recent_messages(resolved.thread, limit=self._recent_limit)

        quoted = process_quoted_content(content, prior)
        if quoted.is_duplicate:
            logger.debug("Skipping duplicate reply in thread %s", resolved.thread.id)
            return
        if quoted.reply_reference is None and is_duplicate_message(prior, quoted.content_to_send):
            logger.debug("Skipping duplicate message in thread %s", resolved.thread.id)
            return

        message_id = await self._chat.send_to_thread(resolved.thread, OutboundMessage(
            content=quoted.content_to_send,
            author_name=payload.get("author_name"),
            reply_to=quoted.reply_reference,
        ))
        logger.info("Posted message %s to thread %s for ticket %s",
                    message_id, resolved.thread.id, event.ticket_id)

    async def handle_attachment(self, event: InboundEvent) -> None:
        files = event.payload.get("files") or []
        if not files:
            logger.debug("Attachment event %s has no files", event.id)
            return
        descriptors = [AttachmentDescriptor.model_validate(f) for f in files]

        resolved = await self._resolve(event.ticket_id, retry=True)
        result = await self._pipeline.process_batch(resolved.thread, descriptors, content=event.payload.get("content"))
        if result.rejected:
            logger.warning("Attachment batch for ticket %s partially rejected: %s", event.ticket_id, result.summary())

    async def handle_conversation_updated(self, event: InboundEvent) -> None:
        status = str(event.payload.get("status") or "").lower()
        if not status:
            raise MalformedEventError(f"conversation update {event.id} has no status")

        resolved = await self._resolve(event.ticket_id, retry=False)
        label = event.payload.get("friendly_id") or event.ticket_id
        await self._chat.send_to_thread(resolved.thread, OutboundMessage(
            content=f"Ticket #{label} status changed to **{status}**",
            color=STATUS_COLORS.get(status),
        ))

        if status in CLOSING_STATUSES:
            try:
                await self._chat.archive_thread(resolved.thread)
            except Exception as exc:  # noqa: BLE001
                # The notice is already posted; a retry would post it twice
                logger.warning("Could not archive thread %s for ticket %s: %s",
                               resolved.thread.id, event.ticket_id, exc)
            else:
                logger.info("Archived thread %s for %s ticket %s", resolved.thread.id, status, event.ticket_id)

    async def handle_thread_create(self, event: InboundEvent) -> None:
        thread_id = event.payload.get("thread_id")
        if not thread_id:
            raise MalformedEventError(f"thread_create event {event.id} has no thread id")
        mapping = await self._mappings.create(TicketThreadMapping(
            ticket_id=event.ticket_id,
            thread_id=str(thread_id),
            discord_user_id=event.payload.get("discord_user_id"),
            customer_id=event.payload.get("customer_id"),
        ))
        await self._remember(mapping)
        logger.info("Mapped ticket %s to thread %s", mapping.ticket_id, mapping.thread_id)

    async def _resolve(self, ticket_id: str, *, retry: bool) -> ResolvedThread:
        fast_lookup = self._cache.get if self._cache is not None else None
        if retry:
            resolved = await self._resolver.resolve_with_retry(ticket_id, self._resolve_options, fast_lookup)
        else:
            resolved = await self._resolver.resolve(ticket_id, fast_lookup)
        await self._remember(resolved.mapping)
        return resolved

    async def _remember(self, mapping: TicketThreadMapping) -> None:
        if self._cache is None:
            return
        try:
            await self._cache.put(mapping)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not cache mapping for ticket %s: %s", mapping.ticket_id, exc)


def describe(event: InboundEvent) -> dict[str, Any]:
    """Compact event summary for log lines and dead-letter listings."""
    return {"id": event.id, "type": event.type.value, "ticket_id": event.ticket_id, "priority": event.priority}
