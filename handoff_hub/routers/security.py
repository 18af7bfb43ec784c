"""Security API routes: emergency tokens, login gate and security events."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ..conversations.models import Actor
from ..core.clock import utcnow
from ..core.db import service_context
from ..core.rate_limits import get_client_ip, limiter, token_validation_limit
from ..security import schemas as security_schemas
from ..security.audit import EMERGENCY_TOKEN_VALIDATION
from ..security.auth import require_role
from ..security.emergency_tokens import redact

logger = logging.getLogger(__name__)

router = APIRouter(tags=["security"])


def _invalid(error: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=security_schemas.TokenValidationResponse(valid=False, error=error).model_dump(),
    )


def _validate_and_audit(token: str, origin: str) -> bool:
    with service_context() as services:
        valid = services.token_validator.validate(token, origin)
        services.audit_log.record_event(
            EMERGENCY_TOKEN_VALIDATION,
            identity=None,
            severity="low" if valid else "medium",
            origin=origin,
            details={"valid": valid, "token_prefix": redact(token)},
            created_at=utcnow(),
        )
    return valid


@router.post(
    "/api/security/emergency-token/validate",
    response_model=security_schemas.TokenValidationResponse,
)
@limiter.limit(token_validation_limit)
async def validate_emergency_token(request: Request) -> Any:
    """Answer ``{"valid": bool}``; malformed bodies get a 400, internal faults a 500."""

    try:
        body = await request.json()
    except ValueError:
        return _invalid("Invalid token format", 400)
    token = body.get("token") if isinstance(body, dict) else None
    if not isinstance(token, str) or not token:
        return _invalid("Invalid token format", 400)

    try:
        valid = await run_in_threadpool(_validate_and_audit, token, get_client_ip(request))
    except Exception:
        logger.exception("Emergency token validation failed")
        return _invalid("Validation failed", 500)
    return security_schemas.TokenValidationResponse(valid=valid)


@router.post(
    "/api/security/login-gate", response_model=security_schemas.RateLimitStatus
)
def login_gate(
    payload: security_schemas.LoginGateRequest,
) -> security_schemas.RateLimitStatus:
    with service_context() as services:
        return services.rate_limiter.check_and_record(payload.identity)


@router.post("/api/security/events")
def record_security_event(
    payload: security_schemas.SecurityEventRequest,
    request: Request,
    actor: Actor = Depends(require_role("operator")),
) -> dict[str, Any]:
    details = dict(payload.details)
    details["message"] = payload.message
    details["reported_by"] = actor.identity
    user_agent = request.headers.get("User-Agent")
    if user_agent:
        details["user_agent"] = user_agent
    with service_context() as services:
        event = services.audit_log.record_event(
            payload.event_type,
            identity=payload.identity,
            severity=payload.severity,
            origin=get_client_ip(request),
            details=details,
            created_at=utcnow(),
        )
    logger.info("Security event %s recorded (%s)", payload.event_type, payload.severity)
    return {"success": True, "event_id": event.id}
