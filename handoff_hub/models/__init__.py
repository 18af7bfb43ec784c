"""SQLAlchemy declarative base and persistence models.

This package hosts the SQLAlchemy models used across the backend. It exposes a
single declarative ``Base`` class that other modules can import when creating
tables. Individual models live in dedicated modules within this package.
"""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy declarative models."""


# Re-export the models so callers can write ``from handoff_hub.models import
# Conversation`` instead of touching the individual modules.
from .agent import SalesAgent
from .conversation import AgentChannelLogEntry, ControlNotice, Conversation, Message
from .delivery import AuditLogEntry, DeliveryLogEntry


__all__ = [
    "AgentChannelLogEntry",
    "AuditLogEntry",
    "Base",
    "ControlNotice",
    "Conversation",
    "DeliveryLogEntry",
    "Message",
    "SalesAgent",
]
