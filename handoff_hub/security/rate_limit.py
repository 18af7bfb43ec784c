"""Login gate: block identities with too many recent failed logins."""

from __future__ import annotations

import logging
from datetime import timedelta

from ..core.clock import Clock, utcnow
from .audit import LOGIN_FAILED, AuditLogRepository
from .schemas import RateLimitStatus

logger = logging.getLogger(__name__)


class LoginRateLimiter:
    """Sliding-window counter over ``login_failed`` audit events.

    The limiter only reads the audit log; failed logins are recorded by the
    authentication boundary through the security events endpoint.
    """

    def __init__(
        self,
        audit_log: AuditLogRepository,
        *,
        max_attempts: int = 5,
        window: timedelta = timedelta(minutes=15),
        clock: Clock = utcnow,
    ) -> None:
        self._audit_log = audit_log
        self._max_attempts = max_attempts
        self._window = window
        self._clock = clock

    def check_and_record(self, identity: str) -> RateLimitStatus:
        now = self._clock()
        attempts = self._audit_log.count_events(
            LOGIN_FAILED, identity, since=now - self._window
        )
        blocked = attempts >= self._max_attempts
        if blocked:
            logger.warning("Login blocked for %s after %s failed attempts", identity, attempts)
        return RateLimitStatus(
            blocked=blocked,
            attempts=attempts,
            reset_at=now + self._window if blocked else None,
        )


__all__ = ["LoginRateLimiter"]
