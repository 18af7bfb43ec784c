"""JWT-backed authentication dependencies for FastAPI routers."""

from __future__ import annotations

from typing import Callable

from fastapi import Depends, HTTPException, status

from ..conversations.models import Actor, ActorRole
from ..core.auth import AccessTokenPayload, get_access_context

_ROLE_LEVELS = {"seller": 0, "operator": 1, "admin": 2}


async def get_current_actor(
    payload: AccessTokenPayload = Depends(get_access_context),
) -> Actor:
    """Build the :class:`Actor` for the authenticated caller."""

    role = ActorRole(payload["role"])
    return Actor(
        identity=payload["sub"],
        role=role,
        display_name=payload.get("name") or payload["sub"],
        agent_id=payload.get("agent_id") if role is ActorRole.SELLER else None,
    )


def require_role(min_role: str) -> Callable[..., Actor]:
    """Create a dependency ensuring the caller has at least ``min_role`` privileges."""

    if min_role not in _ROLE_LEVELS:
        raise ValueError(f"Unknown role: {min_role}")

    async def dependency(actor: Actor = Depends(get_current_actor)) -> Actor:
        if _ROLE_LEVELS[actor.role.value] < _ROLE_LEVELS[min_role]:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role.",
            )
        return actor

    return dependency


__all__ = ["get_current_actor", "require_role"]
