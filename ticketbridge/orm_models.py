"""SQLAlchemy ORM models for the bridge's durable state.

Models provided:
- ``TicketThreadMappingRow``: write-once link between a ticket and its chat thread
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class TicketThreadMappingRow(Base):
    """Durable association between a ticket and the chat thread mirroring it.

    Fields:
        - ticket_id: Ticketing backend identifier (primary key)
        - thread_id: Chat thread identifier (unique)
        - discord_user_id: Chat user who opened the ticket (optional)
        - customer_id: Ticketing backend customer (optional)
        - created_at / updated_at: Row timestamps
    """
    __tablename__ = "ticket_thread_mappings"

    ticket_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    thread_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    discord_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
