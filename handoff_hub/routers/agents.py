"""Sales agent directory routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..agents import schemas as agent_schemas
from ..conversations.models import Actor
from ..core.db import service_context
from ..security.auth import require_role

router = APIRouter(tags=["agents"])


@router.get("/api/agents", response_model=list[agent_schemas.SalesAgentProfile])
def list_transfer_targets(
    actor: Actor = Depends(require_role("operator")),
) -> list[agent_schemas.SalesAgentProfile]:
    """Active sales agents an operator can transfer a conversation to."""

    with service_context() as services:
        return services.agents.list_active()
