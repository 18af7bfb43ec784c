"""Validation of bearer access tokens issued by the authentication boundary."""

from __future__ import annotations

from typing import cast

import jwt
from fastapi import HTTPException, Request, status
from jwt import ExpiredSignatureError, InvalidTokenError
from typing_extensions import TypedDict

from ..config import Settings, get_settings

__all__ = [
    "AccessTokenConfigurationError",
    "AccessTokenPayload",
    "AccessTokenValidationError",
    "decode_access_token",
    "get_access_context",
]

ROLES = ("seller", "operator", "admin")


class AccessTokenConfigurationError(RuntimeError):
    """Raised when access token configuration is invalid."""


class AccessTokenValidationError(ValueError):
    """Raised when the provided access token cannot be validated."""


class _AccessTokenRequiredClaims(TypedDict):
    sub: str
    role: str


class AccessTokenPayload(_AccessTokenRequiredClaims, total=False):
    """Decoded JWT payload of an authenticated caller."""

    aud: str | list[str]
    agent_id: int
    exp: int
    iat: int
    iss: str
    name: str
    type: str


def _require(settings: Settings) -> tuple[str, str, str]:
    missing = [
        name
        for name, value in (
            ("ACCESS_TOKEN_SECRET", settings.access_token_secret),
            ("ACCESS_TOKEN_ISSUER", settings.access_token_issuer),
            ("ACCESS_TOKEN_AUDIENCE", settings.access_token_audience),
        )
        if not value
    ]
    if missing:
        raise AccessTokenConfigurationError(
            f"Environment variable(s) {', '.join(missing)} must be set for token validation.",
        )
    return (
        cast(str, settings.access_token_secret),
        cast(str, settings.access_token_issuer),
        cast(str, settings.access_token_audience),
    )


def decode_access_token(token: str, settings: Settings | None = None) -> AccessTokenPayload:
    """Decode and validate an access token.

    Args:
        token: Encoded JWT token string from the ``Authorization`` header.
        settings: Configuration to validate against; defaults to the process
            settings.

    Returns:
        AccessTokenPayload: Parsed payload carrying the caller identity and role.

    Raises:
        AccessTokenConfigurationError: If mandatory configuration is missing.
        AccessTokenValidationError: If signature, claims or expiry are invalid.
    """

    settings = settings or get_settings()
    secret_key, issuer, audience = _require(settings)

    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[settings.access_token_algorithm],
            audience=audience,
            issuer=issuer,
            options={"require": ["exp", "aud", "iss", "sub"]},
        )
    except ExpiredSignatureError as exc:
        raise AccessTokenValidationError("Access token has expired.") from exc
    except InvalidTokenError as exc:
        raise AccessTokenValidationError("Access token is invalid.") from exc

    if payload.get("role") not in ROLES:
        raise AccessTokenValidationError("Access token carries no known role.")
    agent_id = payload.get("agent_id")
    if payload["role"] == "seller" and (
        not isinstance(agent_id, int) or isinstance(agent_id, bool)
    ):
        raise AccessTokenValidationError("Seller tokens must carry an integer 'agent_id'.")
    type_claim = payload.get("type")
    if type_claim and type_claim != "access":
        raise AccessTokenValidationError("Token must be an access token.")

    return cast(AccessTokenPayload, payload)


async def get_access_context(request: Request) -> AccessTokenPayload:
    """Extract the caller context from the ``Authorization`` header.

    Raises:
        HTTPException: With status ``401`` when the header is missing or invalid,
            or ``500`` if the token configuration is incorrect.
    """

    authorization = request.headers.get("Authorization")
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header.",
        )

    scheme, _, credentials = authorization.partition(" ")
    if not credentials or scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must use Bearer scheme.",
        )

    try:
        return decode_access_token(credentials)
    except AccessTokenConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    except AccessTokenValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
