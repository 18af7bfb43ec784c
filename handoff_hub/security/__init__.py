"""Security utilities exposed for convenience."""

from .audit import (
    AuditLogRepository,
    InMemoryAuditLogRepository,
    SqlAuditLogRepository,
)
from .auth import get_current_actor, require_role
from .emergency_tokens import EmergencyTokenValidator, compute_checksum, issue_token
from .rate_limit import LoginRateLimiter
from .tokens import create_access_token

__all__ = [
    "AuditLogRepository",
    "EmergencyTokenValidator",
    "InMemoryAuditLogRepository",
    "LoginRateLimiter",
    "SqlAuditLogRepository",
    "compute_checksum",
    "create_access_token",
    "get_current_actor",
    "issue_token",
    "require_role",
]
