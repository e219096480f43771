"""Validation and normalization of raw ticketing webhooks into ``InboundEvent``s.

The ticketing backend posts ``{"event": <name>, "data": {...}}`` documents
whose field names vary between event kinds and API versions. This module is
the single place that knows those shapes; everything downstream works on
``InboundEvent`` payloads with stable keys.

Payload keys produced:
- message_created: ``content``, ``message_id``, ``author_name``, ``created_at``
- attachment: ``files`` (``AttachmentDescriptor`` dicts), ``message_id``
- conversation_updated: ``status``, ``title``, ``friendly_id``
- thread_create: ``thread_id``, ``discord_user_id``, ``customer_id``
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from ticketbridge.errors import MalformedEventError
from ticketbridge.models import EventType, InboundEvent


logger = logging.getLogger(__name__)

MESSAGE_EVENTS = frozenset({"message_created", "message.created"})
STATUS_EVENTS = frozenset({"conversation_updated", "ticket.updated"})
THREAD_EVENTS = frozenset({"thread_create", "conversation.created"})


def _first(data: dict[str, Any], *keys: str) -> Optional[Any]:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def extract_ticket_id(data: Any) -> Optional[str]:
    """Return the ticket (conversation) id from webhook data, or None."""
    if not isinstance(data, dict):
        return None
    conversation = data.get("conversation")
    nested = conversation.get("id") if isinstance(conversation, dict) else None
    value = _first(data, "conversationId", "ticket_id", "ticketId") or nested or data.get("id")
    return str(value) if value not in (None, "") else None


def _file_descriptor(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise MalformedEventError(f"attachment entry must be an object, got {type(raw).__name__}")
    url = _first(raw, "url", "url_private", "source_url", "downloadUrl")
    if not url:
        raise MalformedEventError("attachment entry has no url")
    size = _first(raw, "size", "declared_size")
    if size is not None:
        try:
            size = int(size)
        except (TypeError, ValueError) as exc:
            raise MalformedEventError(f"attachment size {size!r} is not a number") from exc
    return {
        "source_url": str(url),
        "declared_mime": _first(raw, "content_type", "mimetype", "mimeType", "declared_mime"),
        "declared_size": size,
        "filename": _first(raw, "filename", "name"),
    }


def events_from_webhook(raw: Any) -> list[InboundEvent]:
    """Validate a raw webhook and return the events it implies.

    Unsupported event names yield an empty list. Supported events missing
    required fields raise ``MalformedEventError``.

    Examples
    --------
    >>> events = events_from_webhook({"event": "conversation_updated",
    ...                               "data": {"id": "T-1", "status": "closed"}})
    >>> [(e.type.value, e.ticket_id, e.priority) for e in events]
    [('conversation_updated', 'T-1', 3)]
    """
    if not isinstance(raw, dict) or not isinstance(raw.get("event"), str):
        raise MalformedEventError("webhook must be an object with a string 'event'")
    data = raw.get("data")
    if not isinstance(data, dict):
        raise MalformedEventError("webhook 'data' must be an object")

    name = raw["event"]
    if name in MESSAGE_EVENTS:
        return _message_events(data)
    if name in STATUS_EVENTS:
        return _status_events(data)
    if name in THREAD_EVENTS:
        return _thread_events(name, data)
    logger.debug("Ignoring unsupported webhook event %s", name)
    return []


def _message_events(data: dict[str, Any]) -> list[InboundEvent]:
    ticket_id = extract_ticket_id(data)
    if not ticket_id:
        raise MalformedEventError("message event is missing a conversation id")

    message = data.get("message") if isinstance(data.get("message"), dict) else {}
    source = {**data, **message}
    content = _first(source, "markdown", "text", "content") or ""
    user = source.get("user") if isinstance(source.get("user"), dict) else {}
    message_id = _first(source, "messageId", "message_id") or (message.get("id") if message else None)
    if message_id is None and data.get("conversationId"):
        message_id = data.get("id")

    events: list[InboundEvent] = []
    if str(content).strip():
        events.append(InboundEvent(
            type=EventType.MESSAGE_CREATED,
            ticket_id=ticket_id,
            payload={
                "content": str(content),
                "message_id": message_id,
                "author_name": _first(source, "authorName", "author_name") or user.get("name"),
                "created_at": _first(source, "createdAt", "created_at"),
            },
        ))

    files = source.get("files") or source.get("attachments") or []
    if files:
        if not isinstance(files, list):
            raise MalformedEventError("message files must be a list")
        events.append(InboundEvent(
            type=EventType.ATTACHMENT,
            ticket_id=ticket_id,
            payload={"files": [_file_descriptor(f) for f in files], "message_id": message_id},
        ))

    if not events:
        logger.debug("Message webhook for ticket %s has neither text nor files", ticket_id)
    return events


def _status_events(data: dict[str, Any]) -> list[InboundEvent]:
    ticket_id = extract_ticket_id(data)
    status = data.get("status")
    if not ticket_id or not status:
        raise MalformedEventError("conversation update is missing a conversation id or status")
    return [InboundEvent(
        type=EventType.CONVERSATION_UPDATED,
        ticket_id=ticket_id,
        payload={
            "status": str(status).lower(),
            "title": data.get("title"),
            "friendly_id": _first(data, "friendlyId", "friendly_id"),
        },
    )]


def _thread_events(name: str, data: dict[str, Any]) -> list[InboundEvent]:
    ticket_id = extract_ticket_id(data)
    thread_id = _first(data, "threadId", "thread_id", "discordThreadId")
    if not thread_id:
        if name == "thread_create":
            raise MalformedEventError("thread_create event is missing a thread id")
        # Tickets opened outside chat have no thread to map
        logger.debug("Conversation %s created without a chat thread", ticket_id)
        return []
    if not ticket_id:
        raise MalformedEventError(f"{name} event is missing a conversation id")
    return [InboundEvent(
        type=EventType.THREAD_CREATE,
        ticket_id=ticket_id,
        payload={
            "thread_id": str(thread_id),
            "discord_user_id": _first(data, "discordUserId", "discord_user_id"),
            "customer_id": _first(data, "customerId", "customer_id"),
        },
    )]
