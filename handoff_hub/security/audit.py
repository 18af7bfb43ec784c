"""Audit log of security-relevant events."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.clock import as_utc
from ..errors import PersistenceFailure
from ..models import AuditLogEntry
from .schemas import AuditEvent

LOGIN_FAILED = "login_failed"
EMERGENCY_TOKEN_VALIDATION = "emergency_token_validation"


class AuditLogRepository(Protocol):
    def record_event(
        self,
        event_type: str,
        *,
        identity: str | None,
        severity: str,
        origin: str | None,
        details: dict[str, Any],
        created_at: datetime,
    ) -> AuditEvent: ...

    def count_events(self, event_type: str, identity: str, *, since: datetime) -> int: ...


class SqlAuditLogRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def record_event(
        self,
        event_type: str,
        *,
        identity: str | None,
        severity: str,
        origin: str | None,
        details: dict[str, Any],
        created_at: datetime,
    ) -> AuditEvent:
        row = AuditLogEntry(
            event_type=event_type,
            identity=identity,
            severity=severity,
            origin=origin,
            details=dict(details),
            created_at=created_at,
        )
        try:
            self._session.add(row)
            self._session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceFailure("Failed to record security event") from exc
        return AuditEvent(
            id=row.id,
            event_type=row.event_type,
            identity=row.identity,
            severity=row.severity,
            origin=row.origin,
            details=dict(row.details or {}),
            created_at=as_utc(row.created_at),
        )

    def count_events(self, event_type: str, identity: str, *, since: datetime) -> int:
        stmt = (
            select(func.count())
            .select_from(AuditLogEntry)
            .where(
                AuditLogEntry.event_type == event_type,
                AuditLogEntry.identity == identity,
                AuditLogEntry.created_at >= since,
            )
        )
        try:
            return int(self._session.scalar(stmt) or 0)
        except SQLAlchemyError as exc:
            raise PersistenceFailure("Failed to read audit log") from exc


class InMemoryAuditLogRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[AuditEvent] = []

    def record_event(
        self,
        event_type: str,
        *,
        identity: str | None,
        severity: str,
        origin: str | None,
        details: dict[str, Any],
        created_at: datetime,
    ) -> AuditEvent:
        with self._lock:
            event = AuditEvent(
                id=len(self.events) + 1,
                event_type=event_type,
                identity=identity,
                severity=severity,
                origin=origin,
                details=dict(details),
                created_at=created_at,
            )
            self.events.append(event)
            return event

    def count_events(self, event_type: str, identity: str, *, since: datetime) -> int:
        with self._lock:
            return sum(
                1
                for e in self.events
                if e.event_type == event_type and e.identity == identity and e.created_at >= since
            )


__all__ = [
    "AuditLogRepository",
    "EMERGENCY_TOKEN_VALIDATION",
    "InMemoryAuditLogRepository",
    "LOGIN_FAILED",
    "SqlAuditLogRepository",
]
