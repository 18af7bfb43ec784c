"""Conversation control API routes."""

from __future__ import annotations

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, status

from ..conversations import schemas as convo_schemas
from ..conversations.control import TransitionDispatcher
from ..conversations.models import Actor, TransitionEvent
from ..core.db import service_context
from ..jobs.maintenance import MaintenanceJobs
from ..security.auth import require_role

logger = logging.getLogger(__name__)

router = APIRouter(tags=["conversations"])


def notify_transition(event: TransitionEvent) -> None:
    """Background task: tell affected sellers about a committed transition."""

    try:
        MaintenanceJobs().notify_transition(event)
    except Exception:
        logger.exception(
            "Notification for conversation %s transition failed", event.conversation_id
        )


def background_dispatcher(background_tasks: BackgroundTasks) -> TransitionDispatcher:
    """Dispatch transition events once the response (and its commit) is done."""

    def dispatch(event: TransitionEvent) -> None:
        background_tasks.add_task(notify_transition, event)

    return dispatch


@router.get(
    "/api/conversations/{conversation_id}",
    response_model=convo_schemas.ConversationDetail,
)
def get_conversation(
    conversation_id: int,
    limit: int = 200,
    actor: Actor = Depends(require_role("seller")),
) -> convo_schemas.ConversationDetail:
    with service_context() as services:
        return services.control.get_detail(conversation_id, limit=limit)


@router.get(
    "/api/conversations/{conversation_id}/messages",
    response_model=list[convo_schemas.TimelineMessage],
)
def list_messages(
    conversation_id: int,
    limit: int = 200,
    actor: Actor = Depends(require_role("seller")),
) -> list[convo_schemas.TimelineMessage]:
    with service_context() as services:
        return services.control.list_messages(conversation_id, limit=limit)


@router.post(
    "/api/conversations/{conversation_id}/take-control",
    response_model=convo_schemas.ConversationSnapshot,
)
def take_control(
    conversation_id: int,
    payload: convo_schemas.TakeControlRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_role("operator")),
) -> convo_schemas.ConversationSnapshot:
    with service_context(background_dispatcher(background_tasks)) as services:
        return services.control.take_control(
            conversation_id, payload.expected_status, actor
        )


@router.post(
    "/api/conversations/{conversation_id}/transfer",
    response_model=convo_schemas.ConversationSnapshot,
)
def transfer_conversation(
    conversation_id: int,
    payload: convo_schemas.TransferRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_role("operator")),
) -> convo_schemas.ConversationSnapshot:
    with service_context(background_dispatcher(background_tasks)) as services:
        return services.control.transfer_to_agent(
            conversation_id, payload.target_agent_id, actor, note=payload.note
        )


@router.post(
    "/api/conversations/{conversation_id}/close",
    response_model=convo_schemas.ConversationSnapshot,
)
def close_conversation(
    conversation_id: int,
    background_tasks: BackgroundTasks,
    payload: convo_schemas.CloseRequest | None = None,
    actor: Actor = Depends(require_role("operator")),
) -> convo_schemas.ConversationSnapshot:
    with service_context(background_dispatcher(background_tasks)) as services:
        return services.control.close(
            conversation_id, actor, reason=payload.reason if payload else None
        )


@router.post(
    "/api/conversations/{conversation_id}/messages",
    response_model=convo_schemas.TimelineMessage,
    status_code=status.HTTP_201_CREATED,
)
def send_message(
    conversation_id: int,
    payload: convo_schemas.SendMessageRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_role("seller")),
) -> convo_schemas.TimelineMessage:
    with service_context(background_dispatcher(background_tasks)) as services:
        return services.control.send_message(conversation_id, payload.content, actor)
