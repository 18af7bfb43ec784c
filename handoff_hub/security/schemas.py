"""Pydantic schemas for the security endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class TokenValidationResponse(BaseModel):
    valid: bool
    error: str | None = None


class RateLimitStatus(BaseModel):
    blocked: bool
    attempts: int
    reset_at: datetime | None = None


class LoginGateRequest(BaseModel):
    identity: str = Field(min_length=1, max_length=320)


class SecurityEventRequest(BaseModel):
    event_type: str = Field(min_length=1, max_length=64)
    message: str = Field(min_length=1, max_length=2000)
    severity: Literal["low", "medium", "high", "critical"] = "medium"
    identity: str | None = Field(default=None, max_length=320)
    details: dict[str, Any] = Field(default_factory=dict)


class AuditEvent(BaseModel):
    id: int
    event_type: str
    identity: str | None = None
    severity: str
    origin: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
