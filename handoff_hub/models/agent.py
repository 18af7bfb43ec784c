"""Sales agent profiles.

Agents are provisioned by an external back office; this service only reads
them to validate transfers, attribute reconciled messages and resolve the
transport credential bound to each agent's own channel.
"""

from __future__ import annotations

import datetime as dt

from sqlalchemy import DateTime, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from ..core.clock import utcnow
from . import Base


class SalesAgent(Base):
    """A sales agent ("seller") who can own conversations.

    Attributes:
        name: Display name used as ``sender_name`` on reconciled messages.
        contact_number: Number that receives transfer notifications.
        transport_token: Credential of the agent's own channel binding.
        is_active: Inactive agents cannot receive transfers.
    """

    __tablename__ = "sales_agents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    contact_number: Mapped[str | None] = mapped_column(String(length=32), nullable=True)
    transport_token: Mapped[str | None] = mapped_column(String(length=255), nullable=True)
    is_active: Mapped[bool] = mapped_column(
        nullable=False,
        default=True,
        server_default=text("true"),
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
