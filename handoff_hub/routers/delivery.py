"""Outbound notification and resend API routes."""

from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends

from ..conversations.models import Actor
from ..core.db import service_context
from ..config import get_settings
from ..delivery import schemas as delivery_schemas
from ..security.auth import require_role

router = APIRouter(tags=["delivery"])


@router.post("/api/delivery/notifications", response_model=delivery_schemas.DeliveryResult)
def send_notification(
    payload: delivery_schemas.NotificationRequest,
    actor: Actor = Depends(require_role("operator")),
) -> delivery_schemas.DeliveryResult:
    with service_context() as services:
        return services.delivery.send(
            payload.recipient,
            payload.content,
            payload.context_type,
            payload.metadata,
            sender_identity=payload.sender_identity,
        )


@router.post("/api/delivery/resend", response_model=delivery_schemas.ResendSummary)
def resend_failed(
    payload: delivery_schemas.ResendRequest | None = None,
    actor: Actor = Depends(require_role("operator")),
) -> delivery_schemas.ResendSummary:
    settings = get_settings()
    payload = payload or delivery_schemas.ResendRequest()
    with service_context() as services:
        return services.delivery.resend_failed(
            timedelta(hours=payload.lookback_hours or settings.resend_lookback_hours),
            payload.limit or settings.resend_batch_limit,
        )
