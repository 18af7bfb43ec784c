"""Helpers for issuing access tokens (operator tooling and tests).

Production tokens come from the external authentication boundary; this
module signs compatible tokens with the same settings the API validates
against.
"""

from __future__ import annotations

import datetime as dt
from typing import Any

import jwt

from ..config import Settings, get_settings
from ..core.clock import utcnow


def create_access_token(
    subject: str,
    role: str,
    *,
    name: str | None = None,
    agent_id: int | None = None,
    settings: Settings | None = None,
    ttl_seconds: int | None = None,
) -> tuple[str, dt.datetime]:
    """Issue a signed JWT access token for ``subject``."""

    settings = settings or get_settings()
    if not settings.access_token_secret:
        raise RuntimeError("ACCESS_TOKEN_SECRET must be set to issue tokens.")
    now = utcnow()
    ttl = ttl_seconds if ttl_seconds is not None else settings.access_token_ttl_seconds
    expires_at = now + dt.timedelta(seconds=ttl)
    payload: dict[str, Any] = {
        "sub": subject,
        "name": name or subject,
        "role": role,
        "iss": settings.access_token_issuer,
        "aud": settings.access_token_audience,
        "iat": int(now.timestamp()),
        "exp": int(expires_at.timestamp()),
        "type": "access",
    }
    if agent_id is not None:
        payload["agent_id"] = agent_id
    token = jwt.encode(
        payload, settings.access_token_secret, algorithm=settings.access_token_algorithm
    )
    return str(token), expires_at


__all__ = ["create_access_token"]
