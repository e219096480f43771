"""Pydantic record models shared by the store, dispatcher and handlers.

These models validate the shapes we write to Redis and the database and make
the call sites more explicit than passing generic dicts around.
"""
from __future__ import annotations

import datetime as _dt
import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, conint, constr, model_validator

from ticketbridge.config import priority_for_event_type
from ticketbridge.constants import STATE_QUEUED


def utcnow() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


class EventType(str, Enum):
    MESSAGE_CREATED = "message_created"
    ATTACHMENT = "attachment"
    CONVERSATION_UPDATED = "conversation_updated"
    THREAD_CREATE = "thread_create"


class InboundEvent(BaseModel):
    """Immutable event as received from the ticketing backend."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: EventType
    ticket_id: constr(min_length=1)  # type: ignore[valid-type]
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: conint(ge=0, le=3)  # type: ignore[valid-type]
    enqueued_at: _dt.datetime = Field(default_factory=utcnow)

    @model_validator(mode="before")
    @classmethod
    def _default_priority(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("priority") is None:
            data = dict(data)
            data["priority"] = priority_for_event_type(getattr(data.get("type"), "value", data.get("type")))
        return data


class QueueEntry(BaseModel):
    """An event plus its delivery bookkeeping while it lives in the store."""

    event: InboundEvent
    attempt_count: int = Field(default=0, ge=0)
    first_attempt_at: Optional[_dt.datetime] = None
    last_error: Optional[str] = None
    state: str = STATE_QUEUED
    # Epoch seconds before which the entry stays invisible (requeue backoff)
    not_before: float = 0.0
    # Epoch seconds on the store clock when the entry was enqueued
    enqueued_at: float = 0.0

    @property
    def id(self) -> str:
        return self.event.id


class DeadLetterRecord(BaseModel):
    """Terminal failure kept verbatim for inspection and replay."""

    entry: QueueEntry
    reason: str
    error_type: Optional[str] = None
    error_message: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    dead_lettered_at: _dt.datetime = Field(default_factory=utcnow)


class QueueStats(BaseModel):
    """Point-in-time view of the store for metrics and the status script."""

    depths: dict[str, int]
    dead_letter_count: int
    oldest_entry_age_seconds: float = 0.0
    duplicates_dropped: int = 0


class TicketThreadMapping(BaseModel):
    """Durable association between a ticket and its chat thread."""
    model_config = ConfigDict(from_attributes=True)

    ticket_id: str
    thread_id: str
    discord_user_id: Optional[str] = None
    customer_id: Optional[str] = None
    created_at: _dt.datetime = Field(default_factory=utcnow)
    updated_at: _dt.datetime = Field(default_factory=utcnow)


class PriorMessage(BaseModel):
    """A message already present in the thread, used for reconciliation."""

    id: Optional[str] = None
    content: str = ""


class OutboundFile(BaseModel):
    filename: str
    content_type: str
    data: bytes


class OutboundMessage(BaseModel):
    """What a handler asks the chat platform to post."""

    content: Optional[str] = None
    author_name: Optional[str] = None
    reply_to: Optional[str] = None
    color: Optional[int] = None
    files: list[OutboundFile] = Field(default_factory=list)
