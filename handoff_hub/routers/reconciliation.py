"""Timeline reconciliation API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..config import get_settings
from ..conversations import schemas as convo_schemas
from ..conversations.models import Actor
from ..core.db import service_context
from ..security.auth import require_role

router = APIRouter(tags=["reconciliation"])


@router.post(
    "/api/reconciliation/run", response_model=convo_schemas.ReconciliationReport
)
def run_reconciliation(
    payload: convo_schemas.ReconciliationRequest | None = None,
    actor: Actor = Depends(require_role("operator")),
) -> convo_schemas.ReconciliationReport:
    payload = payload or convo_schemas.ReconciliationRequest()
    with service_context() as services:
        return services.reconciliation.reconcile(
            payload.batch_limit or get_settings().reconcile_batch_limit,
            after_id=payload.after_id,
        )


@router.get(
    "/api/reconciliation/stats", response_model=convo_schemas.ReconciliationStats
)
def reconciliation_stats(
    actor: Actor = Depends(require_role("operator")),
) -> convo_schemas.ReconciliationStats:
    with service_context() as services:
        return services.reconciliation.stats()
