"""Inbound message events handed over by the channel integration."""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends

from ..conversations import schemas as convo_schemas
from ..conversations.models import Actor, InboundEvent
from ..core.clock import utcnow
from ..core.db import service_context
from ..jobs.maintenance import MaintenanceJobs
from ..security.auth import require_role
from .conversations import background_dispatcher

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


def reconcile_agent_channel() -> None:
    """Background task: project fresh agent-channel entries onto the timeline."""

    try:
        MaintenanceJobs().reconcile_messages()
    except Exception:
        logger.exception("Reconciliation after agent-channel event failed")


@router.post("/api/events/inbound", response_model=convo_schemas.IngestResult)
def receive_inbound_event(
    payload: convo_schemas.InboundEventRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_role("operator")),
) -> convo_schemas.IngestResult:
    event = InboundEvent(
        sender_contact=payload.sender_contact,
        content=payload.content,
        transport_message_id=payload.transport_message_id,
        timestamp=payload.timestamp or utcnow(),
        conversation_hint=payload.conversation_hint,
        sender_name=payload.sender_name,
        message_kind=payload.message_kind,
        media_url=payload.media_url,
        agent_id=payload.agent_id,
        from_agent=payload.from_agent,
        source=payload.source,
    )
    with service_context(background_dispatcher(background_tasks)) as services:
        result = services.control.record_inbound(event)
    if result.routed_to == "agent_channel":
        background_tasks.add_task(reconcile_agent_channel)
    return result
