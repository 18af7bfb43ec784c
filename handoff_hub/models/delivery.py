"""Outbound delivery log and security audit log models."""

from __future__ import annotations

import datetime as dt
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from . import Base


class DeliveryLogEntry(Base):
    """One outbound notification attempt.

    A ``NULL`` ``transport_message_id`` means the transport never acknowledged
    the send; such ``notification`` rows are re-driven by the resend job. A
    resend attempt points back at the row it re-drives through
    ``resend_of_id``.
    """

    __tablename__ = "delivery_log"
    __table_args__ = (
        Index("ix_delivery_log_context_created", "context_type", "created_at"),
        Index("ix_delivery_log_resend_of", "resend_of_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sender_identity: Mapped[str] = mapped_column(String(length=128), nullable=False)
    recipient: Mapped[str] = mapped_column(String(length=64), nullable=False)
    content: Mapped[str] = mapped_column(Text(), nullable=False)
    context_type: Mapped[str] = mapped_column(String(length=32), nullable=False)
    transport_message_id: Mapped[str | None] = mapped_column(
        String(length=128), nullable=True
    )
    status: Mapped[str] = mapped_column(String(length=32), nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    resend_of_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("delivery_log.id"),
        nullable=True,
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class AuditLogEntry(Base):
    """Security-relevant event (failed logins, emergency token checks, ...)."""

    __tablename__ = "audit_log"
    __table_args__ = (
        Index("ix_audit_log_identity_event_created", "identity", "event_type", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(length=64), nullable=False)
    identity: Mapped[str | None] = mapped_column(String(length=320), nullable=True)
    severity: Mapped[str] = mapped_column(String(length=16), nullable=False, default="medium")
    origin: Mapped[str | None] = mapped_column(String(length=64), nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
