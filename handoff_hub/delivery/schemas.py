"""Pydantic schemas for outbound delivery and resend reporting."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class DeliveryLog(BaseModel):
    id: int
    sender_identity: str
    recipient: str
    content: str
    context_type: str
    transport_message_id: str | None = None
    status: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    resend_of_id: int | None = None
    created_at: datetime


class DeliveryResult(BaseModel):
    log_id: int
    status: str
    transport_message_id: str | None = None
    error: str | None = None


class ResendItem(BaseModel):
    original_log_id: int
    recipient: str
    status: Literal["success", "failed", "critical_error"]
    transport_message_id: str | None = None
    log_id: int | None = None
    error: str | None = None


class ResendSummary(BaseModel):
    total_processed: int = 0
    success_count: int = 0
    failed_count: int = 0
    results: list[ResendItem] = Field(default_factory=list)
    summary_log_id: int | None = None
    cancelled: bool = False


class NotificationRequest(BaseModel):
    recipient: str = Field(min_length=1, max_length=64)
    content: str = Field(min_length=1, max_length=4096)
    context_type: str = Field(default="notification", max_length=32)
    metadata: dict[str, Any] = Field(default_factory=dict)
    sender_identity: str = "system"


class ResendRequest(BaseModel):
    lookback_hours: int | None = Field(default=None, ge=1, le=24 * 30)
    limit: int | None = Field(default=None, ge=1, le=1000)
