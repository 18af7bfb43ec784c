"""Pydantic schemas for conversation control APIs."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from .models import ConversationStatus, MessageKind, MessageStatus, SenderType


class ConversationSnapshot(BaseModel):
    id: int
    customer_contact: str
    customer_name: str | None = None
    status: ConversationStatus
    lead_temperature: str = "cold"
    assigned_agent_id: int | None = None
    source: str = "whatsapp"
    created_at: datetime
    updated_at: datetime
    closed_at: datetime | None = None

    @model_validator(mode="after")
    def _seller_has_agent(self) -> "ConversationSnapshot":
        has_agent = self.assigned_agent_id is not None
        if has_agent != (self.status is ConversationStatus.SELLER):
            raise ValueError(
                f"Conversation {self.id}: assigned_agent_id must be set exactly "
                f"when status is 'seller' (status={self.status.value}, "
                f"assigned_agent_id={self.assigned_agent_id})"
            )
        return self


class TimelineMessage(BaseModel):
    id: int
    conversation_id: int
    sender_type: SenderType
    sender_name: str | None = None
    content: str
    message_kind: MessageKind = MessageKind.TEXT
    transport_message_id: str | None = None
    status: MessageStatus
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class AgentChannelEntry(BaseModel):
    id: int
    conversation_id: int | None = None
    customer_contact: str | None = None
    transport_message_id: str
    from_agent: bool
    content: str | None = None
    message_kind: MessageKind = MessageKind.TEXT
    media_url: str | None = None
    agent_id: int
    sent_at: datetime


class ControlNoticeView(BaseModel):
    id: int
    conversation_id: int
    kind: str
    from_status: ConversationStatus
    to_status: ConversationStatus
    actor: str
    recipient_agent_id: int | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class ConversationDetail(ConversationSnapshot):
    messages: list[TimelineMessage] = Field(default_factory=list)
    notices: list[ControlNoticeView] = Field(default_factory=list)


class TakeControlRequest(BaseModel):
    expected_status: ConversationStatus


class TransferRequest(BaseModel):
    target_agent_id: int
    note: str | None = None


class CloseRequest(BaseModel):
    reason: str | None = None


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=4096)


class InboundEventRequest(BaseModel):
    sender_contact: str = Field(min_length=1, max_length=64)
    content: str | None = None
    transport_message_id: str | None = Field(default=None, max_length=128)
    timestamp: datetime | None = None
    conversation_hint: int | None = None
    sender_name: str | None = None
    message_kind: MessageKind = MessageKind.TEXT
    media_url: str | None = None
    agent_id: int | None = None
    from_agent: bool = False
    source: str = "whatsapp"


class IngestResult(BaseModel):
    routed_to: str
    duplicate: bool = False
    conversation: ConversationSnapshot | None = None
    message: TimelineMessage | None = None
    channel_entry: AgentChannelEntry | None = None


class ReconciliationRequest(BaseModel):
    batch_limit: int | None = Field(default=None, ge=1, le=1000)
    after_id: int | None = None


class ReconciliationReport(BaseModel):
    scanned: int = 0
    synced: int = 0
    skipped: int = 0
    failed: int = 0
    last_entry_id: int | None = None
    cancelled: bool = False


class ReconciliationStats(BaseModel):
    channel_entries: int
    synced_entries: int
    pending_entries: int
