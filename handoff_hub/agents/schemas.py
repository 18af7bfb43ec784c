"""Pydantic schemas for sales agent profiles."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class SalesAgentProfile(BaseModel):
    id: int
    name: str
    contact_number: str | None = None
    is_active: bool = True
    has_transport_token: bool = False
    created_at: datetime


class SalesAgentCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    contact_number: str | None = None
    transport_token: str | None = None
    is_active: bool = True
