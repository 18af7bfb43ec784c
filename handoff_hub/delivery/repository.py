"""Delivery log persistence."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from ..core.clock import as_utc
from ..errors import PersistenceFailure
from ..models import DeliveryLogEntry
from . import schemas


class DeliveryLogRepository(Protocol):
    def add_entry(
        self,
        *,
        sender_identity: str,
        recipient: str,
        content: str,
        context_type: str,
        status: str,
        transport_message_id: Optional[str],
        metadata: dict[str, Any],
        created_at: datetime,
        resend_of_id: Optional[int] = None,
    ) -> schemas.DeliveryLog: ...

    def get_entry(self, entry_id: int) -> Optional[schemas.DeliveryLog]: ...

    def list_unacknowledged(
        self, context_type: str, *, since: datetime, limit: int
    ) -> list[schemas.DeliveryLog]:
        """Entries of ``context_type`` without a transport id, oldest first.

        Entries that already have an acknowledged resend are left out.
        """

    def checkpoint(self) -> None: ...

    def rollback(self) -> None: ...


class SqlDeliveryLogRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def add_entry(
        self,
        *,
        sender_identity: str,
        recipient: str,
        content: str,
        context_type: str,
        status: str,
        transport_message_id: Optional[str],
        metadata: dict[str, Any],
        created_at: datetime,
        resend_of_id: Optional[int] = None,
    ) -> schemas.DeliveryLog:
        row = DeliveryLogEntry(
            sender_identity=sender_identity,
            recipient=recipient,
            content=content,
            context_type=context_type,
            status=status,
            transport_message_id=transport_message_id,
            meta=dict(metadata),
            created_at=created_at,
            resend_of_id=resend_of_id,
        )
        try:
            self._session.add(row)
            self._session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceFailure("Failed to write delivery log entry") from exc
        return _to_log(row)

    def get_entry(self, entry_id: int) -> Optional[schemas.DeliveryLog]:
        try:
            row = self._session.get(DeliveryLogEntry, entry_id)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to load delivery log entry {entry_id}") from exc
        return _to_log(row) if row is not None else None

    def list_unacknowledged(
        self, context_type: str, *, since: datetime, limit: int
    ) -> list[schemas.DeliveryLog]:
        resend = aliased(DeliveryLogEntry)
        redriven = (
            select(resend.id)
            .where(
                resend.resend_of_id == DeliveryLogEntry.id,
                resend.transport_message_id.is_not(None),
            )
            .exists()
        )
        stmt = (
            select(DeliveryLogEntry)
            .where(
                DeliveryLogEntry.context_type == context_type,
                DeliveryLogEntry.transport_message_id.is_(None),
                DeliveryLogEntry.created_at >= since,
                ~redriven,
            )
            .order_by(DeliveryLogEntry.created_at.asc(), DeliveryLogEntry.id.asc())
            .limit(limit)
        )
        try:
            return [_to_log(row) for row in self._session.execute(stmt).scalars()]
        except SQLAlchemyError as exc:
            raise PersistenceFailure("Failed to list unacknowledged deliveries") from exc

    def checkpoint(self) -> None:
        try:
            self._session.commit()
        except SQLAlchemyError as exc:
            raise PersistenceFailure("Failed to commit delivery log") from exc

    def rollback(self) -> None:
        self._session.rollback()


class InMemoryDeliveryLogRepository:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[int, schemas.DeliveryLog] = {}
        self._next_id = 1

    @property
    def entries(self) -> list[schemas.DeliveryLog]:
        with self._lock:
            return [e.model_copy() for e in sorted(self._entries.values(), key=lambda e: e.id)]

    def add_entry(
        self,
        *,
        sender_identity: str,
        recipient: str,
        content: str,
        context_type: str,
        status: str,
        transport_message_id: Optional[str],
        metadata: dict[str, Any],
        created_at: datetime,
        resend_of_id: Optional[int] = None,
    ) -> schemas.DeliveryLog:
        with self._lock:
            entry = schemas.DeliveryLog(
                id=self._next_id,
                sender_identity=sender_identity,
                recipient=recipient,
                content=content,
                context_type=context_type,
                status=status,
                transport_message_id=transport_message_id,
                metadata=dict(metadata),
                created_at=created_at,
                resend_of_id=resend_of_id,
            )
            self._entries[entry.id] = entry
            self._next_id += 1
            return entry.model_copy()

    def get_entry(self, entry_id: int) -> Optional[schemas.DeliveryLog]:
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.model_copy() if entry else None

    def list_unacknowledged(
        self, context_type: str, *, since: datetime, limit: int
    ) -> list[schemas.DeliveryLog]:
        with self._lock:
            redriven = {
                e.resend_of_id
                for e in self._entries.values()
                if e.resend_of_id is not None and e.transport_message_id
            }
            items = sorted(
                (
                    e
                    for e in self._entries.values()
                    if e.context_type == context_type
                    and e.transport_message_id is None
                    and e.created_at >= since
                    and e.id not in redriven
                ),
                key=lambda e: (e.created_at, e.id),
            )
            return [e.model_copy() for e in items[:limit]]

    def checkpoint(self) -> None:
        return None

    def rollback(self) -> None:
        return None


def _to_log(row: DeliveryLogEntry) -> schemas.DeliveryLog:
    return schemas.DeliveryLog(
        id=row.id,
        sender_identity=row.sender_identity,
        recipient=row.recipient,
        content=row.content,
        context_type=row.context_type,
        transport_message_id=row.transport_message_id,
        status=row.status,
        metadata=dict(row.meta or {}),
        resend_of_id=row.resend_of_id,
        created_at=as_utc(row.created_at),
    )


__all__ = [
    "DeliveryLogRepository",
    "InMemoryDeliveryLogRepository",
    "SqlDeliveryLogRepository",
]
