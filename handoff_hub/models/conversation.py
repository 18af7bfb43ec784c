"""Conversation, unified timeline and agent-channel log models.

``messages`` is the unified timeline. ``agent_channel_log`` is the append-only
record of traffic that went through an agent's own channel binding; the
reconciliation engine projects it into ``messages``. Both carry the transport
message id issued by the messaging provider, and ``messages`` is unique on it.
"""

from __future__ import annotations

import datetime as dt
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from . import Base


class Conversation(Base):
    """One customer thread and its current owner.

    ``assigned_agent_id`` is set exactly when ``status`` is ``seller``; the
    check constraint enforces it at the database level as well.
    """

    __tablename__ = "conversations"
    __table_args__ = (
        Index("ix_conversations_contact_status", "customer_contact", "status"),
        CheckConstraint(
            "(status = 'seller') = (assigned_agent_id IS NOT NULL)",
            name="ck_conversations_seller_assignment",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    customer_contact: Mapped[str] = mapped_column(String(length=64), nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(length=16),
        nullable=False,
        default="bot",
        server_default=text("'bot'"),
    )
    lead_temperature: Mapped[str] = mapped_column(
        String(length=8),
        nullable=False,
        default="cold",
        server_default=text("'cold'"),
    )
    assigned_agent_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("sales_agents.id"),
        nullable=True,
    )
    source: Mapped[str] = mapped_column(
        String(length=32),
        nullable=False,
        default="whatsapp",
        server_default=text("'whatsapp'"),
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    closed_at: Mapped[dt.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class Message(Base):
    """A message in the unified conversation timeline."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("ux_messages_transport_message_id", "transport_message_id", unique=True),
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("conversations.id"),
        nullable=False,
    )
    sender_type: Mapped[str] = mapped_column(String(length=16), nullable=False)
    sender_name: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    content: Mapped[str] = mapped_column(Text(), nullable=False)
    message_kind: Mapped[str] = mapped_column(
        String(length=16),
        nullable=False,
        default="text",
        server_default=text("'text'"),
    )
    transport_message_id: Mapped[str | None] = mapped_column(
        String(length=128), nullable=True
    )
    status: Mapped[str] = mapped_column(String(length=16), nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class AgentChannelLogEntry(Base):
    """Traffic observed on an agent's own channel binding (append-only)."""

    __tablename__ = "agent_channel_log"
    __table_args__ = (
        Index("ix_agent_channel_log_transport_message_id", "transport_message_id"),
        Index("ix_agent_channel_log_agent_contact", "agent_id", "customer_contact"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("conversations.id"),
        nullable=True,
    )
    customer_contact: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    transport_message_id: Mapped[str] = mapped_column(String(length=128), nullable=False)
    from_agent: Mapped[bool] = mapped_column(nullable=False)
    content: Mapped[str | None] = mapped_column(Text(), nullable=True)
    message_kind: Mapped[str] = mapped_column(
        String(length=16),
        nullable=False,
        default="text",
        server_default=text("'text'"),
    )
    media_url: Mapped[str | None] = mapped_column(Text(), nullable=True)
    agent_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("sales_agents.id"),
        nullable=False,
    )
    sent_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class ControlNotice(Base):
    """Audit/UI record written for every successful ownership transition."""

    __tablename__ = "control_notices"
    __table_args__ = (Index("ix_control_notices_conversation", "conversation_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("conversations.id"),
        nullable=False,
    )
    kind: Mapped[str] = mapped_column(String(length=32), nullable=False)
    from_status: Mapped[str] = mapped_column(String(length=16), nullable=False)
    to_status: Mapped[str] = mapped_column(String(length=16), nullable=False)
    actor: Mapped[str] = mapped_column(String(length=255), nullable=False)
    recipient_agent_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
