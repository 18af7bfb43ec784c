"""Runtime configuration loaded from environment variables.

Values are read once into an immutable :class:`Settings` instance. Tests (and
anything else that changes the environment at runtime) must call
:func:`reset_settings_cache` afterwards.
"""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache

from dotenv import load_dotenv


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return float(value)


def _env_str(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()


@dataclasses.dataclass(frozen=True)
class Settings:
    database_url: str | None = None

    # Emergency access
    emergency_token_secret: str = "EMG_SECRET_2024"
    token_validation_rate_limit: str = "30/minute"

    # Bearer tokens issued by the authentication boundary
    access_token_secret: str | None = None
    access_token_issuer: str | None = None
    access_token_audience: str | None = None
    access_token_algorithm: str = "HS256"
    access_token_ttl_seconds: int = 900

    # Outbound transport
    transport_base_url: str | None = None
    transport_timeout_seconds: float = 10.0
    business_transport_token: str | None = None
    notifier_transport_token: str | None = None

    # Batch jobs
    resend_lookback_hours: int = 24
    resend_pacing_seconds: float = 1.0
    resend_batch_limit: int = 100
    reconcile_batch_limit: int = 100

    # Login gate
    login_max_attempts: int = 5
    login_window_minutes: int = 15

    customer_label: str = "Customer"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings from the environment (and ``.env`` when present)."""

    load_dotenv()
    return Settings(
        database_url=_env_str("DATABASE_URL"),
        emergency_token_secret=_env_str("EMERGENCY_TOKEN_SECRET", "EMG_SECRET_2024"),
        token_validation_rate_limit=_env_str(
            "TOKEN_VALIDATION_RATE_LIMIT", "30/minute"
        ),
        access_token_secret=_env_str("ACCESS_TOKEN_SECRET"),
        access_token_issuer=_env_str("ACCESS_TOKEN_ISSUER"),
        access_token_audience=_env_str("ACCESS_TOKEN_AUDIENCE"),
        access_token_algorithm=_env_str("ACCESS_TOKEN_ALGORITHM", "HS256"),
        access_token_ttl_seconds=_env_int("ACCESS_TOKEN_TTL_SECONDS", 900),
        transport_base_url=_env_str("TRANSPORT_BASE_URL"),
        transport_timeout_seconds=_env_float("TRANSPORT_TIMEOUT_SECONDS", 10.0),
        business_transport_token=_env_str("BUSINESS_TRANSPORT_TOKEN"),
        notifier_transport_token=_env_str("NOTIFIER_TRANSPORT_TOKEN"),
        resend_lookback_hours=_env_int("RESEND_LOOKBACK_HOURS", 24),
        resend_pacing_seconds=_env_float("RESEND_PACING_SECONDS", 1.0),
        resend_batch_limit=_env_int("RESEND_BATCH_LIMIT", 100),
        reconcile_batch_limit=_env_int("RECONCILE_BATCH_LIMIT", 100),
        login_max_attempts=_env_int("LOGIN_MAX_ATTEMPTS", 5),
        login_window_minutes=_env_int("LOGIN_WINDOW_MINUTES", 15),
        customer_label=_env_str("CUSTOMER_LABEL", "Customer"),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()


__all__ = ["Settings", "get_settings", "reset_settings_cache"]
