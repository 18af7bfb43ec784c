"""Persistence for conversations, the unified timeline and the agent-channel log.

Two implementations of :class:`ConversationRepository` live here: the
SQLAlchemy one used by the service and an in-memory one for tests and local
experiments. Both guarantee that

* status writes are compare-and-set on the expected prior status, and
* the timeline holds at most one message per non-null transport message id
  (a second insert raises :class:`~handoff_hub.errors.DuplicateTransportId`).
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, cast

from sqlalchemy import func, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.clock import as_utc, as_utc_optional
from ..errors import DuplicateTransportId, PersistenceFailure
from ..models import AgentChannelLogEntry, ControlNotice, Conversation, Message
from . import schemas
from .models import ConversationStatus, MessageKind, MessageStatus, SenderType


class ConversationRepository(Protocol):
    """Abstraction for persisting conversation artefacts."""

    # Conversations ----------------------------------------------------------
    def get_conversation(self, conversation_id: int) -> Optional[schemas.ConversationSnapshot]: ...

    def find_open_conversation(
        self, customer_contact: str, *, agent_id: Optional[int] = None
    ) -> Optional[schemas.ConversationSnapshot]: ...

    def create_conversation(
        self,
        customer_contact: str,
        *,
        customer_name: Optional[str],
        source: str,
        created_at: datetime,
    ) -> schemas.ConversationSnapshot: ...

    def compare_and_set_status(
        self,
        conversation_id: int,
        expected: ConversationStatus,
        new: ConversationStatus,
        *,
        assigned_agent_id: Optional[int],
        updated_at: datetime,
        closed_at: Optional[datetime] = None,
    ) -> bool: ...

    def touch(self, conversation_id: int, updated_at: datetime) -> None: ...

    def record_notice(
        self,
        conversation_id: int,
        *,
        kind: str,
        from_status: ConversationStatus,
        to_status: ConversationStatus,
        actor: str,
        recipient_agent_id: Optional[int],
        details: Dict[str, Any],
        created_at: datetime,
    ) -> schemas.ControlNoticeView: ...

    def list_notices(self, conversation_id: int) -> List[schemas.ControlNoticeView]: ...

    # Timeline ---------------------------------------------------------------
    def get_message_by_transport_id(
        self, transport_message_id: str
    ) -> Optional[schemas.TimelineMessage]: ...

    def add_message(
        self,
        conversation_id: int,
        *,
        sender_type: SenderType,
        sender_name: Optional[str],
        content: str,
        message_kind: MessageKind,
        transport_message_id: Optional[str],
        status: MessageStatus,
        metadata: Dict[str, Any],
        created_at: datetime,
    ) -> schemas.TimelineMessage: ...

    def update_message_delivery(
        self,
        message_id: int,
        *,
        status: MessageStatus,
        transport_message_id: Optional[str] = None,
    ) -> schemas.TimelineMessage: ...

    def list_messages(
        self, conversation_id: int, limit: int = 200
    ) -> List[schemas.TimelineMessage]: ...

    # Agent-channel log ------------------------------------------------------
    def append_channel_entry(
        self,
        *,
        agent_id: int,
        transport_message_id: str,
        from_agent: bool,
        content: Optional[str],
        message_kind: MessageKind,
        media_url: Optional[str],
        conversation_id: Optional[int],
        customer_contact: Optional[str],
        sent_at: datetime,
    ) -> schemas.AgentChannelEntry: ...

    def list_channel_entries(
        self, limit: int, *, after_id: Optional[int] = None
    ) -> List[schemas.AgentChannelEntry]: ...

    def channel_stats(self) -> schemas.ReconciliationStats: ...

    def checkpoint(self) -> None:
        """Make everything written so far durable."""

    def rollback(self) -> None:
        """Drop writes made since the last checkpoint."""


class SqlConversationRepository:
    """SQLAlchemy implementation of :class:`ConversationRepository`."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # Utility -----------------------------------------------------------------
    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to {action}: {exc.__class__.__name__}") from exc

    def checkpoint(self) -> None:
        with self._guard("commit"):
            self._session.commit()

    def rollback(self) -> None:
        self._session.rollback()

    # Conversation operations --------------------------------------------------
    def get_conversation(self, conversation_id: int) -> Optional[schemas.ConversationSnapshot]:
        with self._guard(f"load conversation {conversation_id}"):
            row = self._session.execute(
                select(Conversation)
                .where(Conversation.id == conversation_id)
                .execution_options(populate_existing=True)
            ).scalar_one_or_none()
        return _to_snapshot(row) if row is not None else None

    def find_open_conversation(
        self, customer_contact: str, *, agent_id: Optional[int] = None
    ) -> Optional[schemas.ConversationSnapshot]:
        with self._guard(f"look up conversation for {customer_contact}"):
            rows = list(
                self._session.execute(
                    select(Conversation)
                    .where(
                        Conversation.customer_contact == customer_contact,
                        Conversation.status != ConversationStatus.CLOSED.value,
                    )
                    .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
                    .execution_options(populate_existing=True)
                ).scalars()
            )
        if not rows:
            return None
        if agent_id is not None:
            for row in rows:
                if row.assigned_agent_id == agent_id:
                    return _to_snapshot(row)
        return _to_snapshot(rows[0])

    def create_conversation(
        self,
        customer_contact: str,
        *,
        customer_name: Optional[str],
        source: str,
        created_at: datetime,
    ) -> schemas.ConversationSnapshot:
        row = Conversation(
            customer_contact=customer_contact,
            customer_name=customer_name,
            status=ConversationStatus.BOT.value,
            source=source,
            created_at=created_at,
            updated_at=created_at,
        )
        with self._guard("create conversation"):
            self._session.add(row)
            self._session.flush()
        return _to_snapshot(row)

    def compare_and_set_status(
        self,
        conversation_id: int,
        expected: ConversationStatus,
        new: ConversationStatus,
        *,
        assigned_agent_id: Optional[int],
        updated_at: datetime,
        closed_at: Optional[datetime] = None,
    ) -> bool:
        values: Dict[str, Any] = {
            "status": new.value,
            "assigned_agent_id": assigned_agent_id,
            "updated_at": updated_at,
        }
        if closed_at is not None:
            values["closed_at"] = closed_at
        stmt = (
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.status == expected.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        with self._guard(f"update conversation {conversation_id}"):
            result = self._session.execute(stmt)
        return int(cast(CursorResult[Any], result).rowcount or 0) == 1

    def touch(self, conversation_id: int, updated_at: datetime) -> None:
        with self._guard(f"touch conversation {conversation_id}"):
            self._session.execute(
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(updated_at=updated_at)
                .execution_options(synchronize_session=False)
            )

    def record_notice(
        self,
        conversation_id: int,
        *,
        kind: str,
        from_status: ConversationStatus,
        to_status: ConversationStatus,
        actor: str,
        recipient_agent_id: Optional[int],
        details: Dict[str, Any],
        created_at: datetime,
    ) -> schemas.ControlNoticeView:
        row = ControlNotice(
            conversation_id=conversation_id,
            kind=kind,
            from_status=from_status.value,
            to_status=to_status.value,
            actor=actor,
            recipient_agent_id=recipient_agent_id,
            details=details,
            created_at=created_at,
        )
        with self._guard("record control notice"):
            self._session.add(row)
            self._session.flush()
        return _to_notice(row)

    def list_notices(self, conversation_id: int) -> List[schemas.ControlNoticeView]:
        with self._guard(f"list notices of conversation {conversation_id}"):
            rows = self._session.execute(
                select(ControlNotice)
                .where(ControlNotice.conversation_id == conversation_id)
                .order_by(ControlNotice.id)
            ).scalars()
            return [_to_notice(row) for row in rows]

    # Timeline operations ------------------------------------------------------
    def get_message_by_transport_id(
        self, transport_message_id: str
    ) -> Optional[schemas.TimelineMessage]:
        with self._guard(f"probe message {transport_message_id}"):
            row = self._session.execute(
                select(Message).where(Message.transport_message_id == transport_message_id)
            ).scalar_one_or_none()
        return _to_message(row) if row is not None else None

    def add_message(
        self,
        conversation_id: int,
        *,
        sender_type: SenderType,
        sender_name: Optional[str],
        content: str,
        message_kind: MessageKind,
        transport_message_id: Optional[str],
        status: MessageStatus,
        metadata: Dict[str, Any],
        created_at: datetime,
    ) -> schemas.TimelineMessage:
        row = Message(
            conversation_id=conversation_id,
            sender_type=sender_type.value,
            sender_name=sender_name,
            content=content,
            message_kind=message_kind.value,
            transport_message_id=transport_message_id,
            status=status.value,
            meta=dict(metadata),
            created_at=created_at,
        )
        try:
            # Savepoint: a transport-id collision must not poison the caller's
            # transaction.
            with self._session.begin_nested():
                self._session.add(row)
        except IntegrityError as exc:
            if transport_message_id and self.get_message_by_transport_id(transport_message_id):
                raise DuplicateTransportId(transport_message_id) from exc
            raise PersistenceFailure(
                f"Failed to insert message into conversation {conversation_id}"
            ) from exc
        except SQLAlchemyError as exc:
            raise PersistenceFailure(
                f"Failed to insert message into conversation {conversation_id}"
            ) from exc
        return _to_message(row)

    def update_message_delivery(
        self,
        message_id: int,
        *,
        status: MessageStatus,
        transport_message_id: Optional[str] = None,
    ) -> schemas.TimelineMessage:
        with self._guard(f"load message {message_id}"):
            row = self._session.get(Message, message_id)
        if row is None:
            raise PersistenceFailure(f"Message {message_id} not found")
        try:
            with self._session.begin_nested():
                row.status = status.value
                if transport_message_id is not None:
                    row.transport_message_id = transport_message_id
        except IntegrityError as exc:
            self._session.refresh(row)
            if transport_message_id:
                raise DuplicateTransportId(transport_message_id) from exc
            raise PersistenceFailure(f"Failed to update message {message_id}") from exc
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to update message {message_id}") from exc
        return _to_message(row)

    def list_messages(
        self, conversation_id: int, limit: int = 200
    ) -> List[schemas.TimelineMessage]:
        with self._guard(f"list messages of conversation {conversation_id}"):
            rows = self._session.execute(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(Message.created_at.asc(), Message.id.asc())
                .limit(limit)
            ).scalars()
            return [_to_message(row) for row in rows]

    # Agent-channel log --------------------------------------------------------
    def append_channel_entry(
        self,
        *,
        agent_id: int,
        transport_message_id: str,
        from_agent: bool,
        content: Optional[str],
        message_kind: MessageKind,
        media_url: Optional[str],
        conversation_id: Optional[int],
        customer_contact: Optional[str],
        sent_at: datetime,
    ) -> schemas.AgentChannelEntry:
        row = AgentChannelLogEntry(
            agent_id=agent_id,
            transport_message_id=transport_message_id,
            from_agent=from_agent,
            content=content,
            message_kind=message_kind.value,
            media_url=media_url,
            conversation_id=conversation_id,
            customer_contact=customer_contact,
            sent_at=sent_at,
        )
        with self._guard("append agent-channel entry"):
            self._session.add(row)
            self._session.flush()
        return _to_entry(row)

    def list_channel_entries(
        self, limit: int, *, after_id: Optional[int] = None
    ) -> List[schemas.AgentChannelEntry]:
        stmt = select(AgentChannelLogEntry).order_by(AgentChannelLogEntry.id.asc()).limit(limit)
        if after_id is not None:
            stmt = stmt.where(AgentChannelLogEntry.id > after_id)
        with self._guard("read agent-channel log"):
            return [_to_entry(row) for row in self._session.execute(stmt).scalars()]

    def channel_stats(self) -> schemas.ReconciliationStats:
        synced_filter = (
            select(Message.id)
            .where(Message.transport_message_id == AgentChannelLogEntry.transport_message_id)
            .exists()
        )
        with self._guard("compute reconciliation stats"):
            total = self._session.scalar(
                select(func.count()).select_from(AgentChannelLogEntry)
            ) or 0
            synced = self._session.scalar(
                select(func.count()).select_from(AgentChannelLogEntry).where(synced_filter)
            ) or 0
        return schemas.ReconciliationStats(
            channel_entries=total,
            synced_entries=synced,
            pending_entries=total - synced,
        )


class InMemoryConversationRepository:
    """Thread-safe in-memory :class:`ConversationRepository`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._conversations: dict[int, schemas.ConversationSnapshot] = {}
        self._messages: dict[int, schemas.TimelineMessage] = {}
        self._by_transport_id: dict[str, int] = {}
        self._entries: dict[int, schemas.AgentChannelEntry] = {}
        self._notices: dict[int, schemas.ControlNoticeView] = {}
        self._ids = {"conversation": 0, "message": 0, "entry": 0, "notice": 0}
        #: Transport ids whose insert fails, to exercise error paths in tests.
        self.failing_transport_ids: set[str] = set()

    def _next_id(self, kind: str) -> int:
        self._ids[kind] += 1
        return self._ids[kind]

    def checkpoint(self) -> None:
        return None

    def rollback(self) -> None:
        return None

    def get_conversation(self, conversation_id: int) -> Optional[schemas.ConversationSnapshot]:
        with self._lock:
            convo = self._conversations.get(conversation_id)
            return convo.model_copy() if convo else None

    def find_open_conversation(
        self, customer_contact: str, *, agent_id: Optional[int] = None
    ) -> Optional[schemas.ConversationSnapshot]:
        with self._lock:
            candidates = sorted(
                (
                    c
                    for c in self._conversations.values()
                    if c.customer_contact == customer_contact
                    and c.status is not ConversationStatus.CLOSED
                ),
                key=lambda c: (c.updated_at, c.id),
                reverse=True,
            )
        if not candidates:
            return None
        if agent_id is not None:
            for convo in candidates:
                if convo.assigned_agent_id == agent_id:
                    return convo.model_copy()
        return candidates[0].model_copy()

    def create_conversation(
        self,
        customer_contact: str,
        *,
        customer_name: Optional[str],
        source: str,
        created_at: datetime,
    ) -> schemas.ConversationSnapshot:
        with self._lock:
            convo = schemas.ConversationSnapshot(
                id=self._next_id("conversation"),
                customer_contact=customer_contact,
                customer_name=customer_name,
                status=ConversationStatus.BOT,
                source=source,
                created_at=created_at,
                updated_at=created_at,
            )
            self._conversations[convo.id] = convo
            return convo.model_copy()

    def compare_and_set_status(
        self,
        conversation_id: int,
        expected: ConversationStatus,
        new: ConversationStatus,
        *,
        assigned_agent_id: Optional[int],
        updated_at: datetime,
        closed_at: Optional[datetime] = None,
    ) -> bool:
        with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None or current.status is not expected:
                return False
            data = current.model_dump()
            data.update(status=new, assigned_agent_id=assigned_agent_id, updated_at=updated_at)
            if closed_at is not None:
                data["closed_at"] = closed_at
            try:
                updated = schemas.ConversationSnapshot(**data)
            except ValueError as exc:
                raise PersistenceFailure(str(exc)) from exc
            self._conversations[conversation_id] = updated
            return True

    def touch(self, conversation_id: int, updated_at: datetime) -> None:
        with self._lock:
            current = self._conversations.get(conversation_id)
            if current is not None:
                self._conversations[conversation_id] = current.model_copy(
                    update={"updated_at": updated_at}
                )

    def record_notice(
        self,
        conversation_id: int,
        *,
        kind: str,
        from_status: ConversationStatus,
        to_status: ConversationStatus,
        actor: str,
        recipient_agent_id: Optional[int],
        details: Dict[str, Any],
        created_at: datetime,
    ) -> schemas.ControlNoticeView:
        with self._lock:
            notice = schemas.ControlNoticeView(
                id=self._next_id("notice"),
                conversation_id=conversation_id,
                kind=kind,
                from_status=from_status,
                to_status=to_status,
                actor=actor,
                recipient_agent_id=recipient_agent_id,
                details=dict(details),
                created_at=created_at,
            )
            self._notices[notice.id] = notice
            return notice.model_copy()

    def list_notices(self, conversation_id: int) -> List[schemas.ControlNoticeView]:
        with self._lock:
            return [
                n.model_copy()
                for n in sorted(self._notices.values(), key=lambda n: n.id)
                if n.conversation_id == conversation_id
            ]

    def get_message_by_transport_id(
        self, transport_message_id: str
    ) -> Optional[schemas.TimelineMessage]:
        with self._lock:
            message_id = self._by_transport_id.get(transport_message_id)
            return self._messages[message_id].model_copy() if message_id else None

    def add_message(
        self,
        conversation_id: int,
        *,
        sender_type: SenderType,
        sender_name: Optional[str],
        content: str,
        message_kind: MessageKind,
        transport_message_id: Optional[str],
        status: MessageStatus,
        metadata: Dict[str, Any],
        created_at: datetime,
    ) -> schemas.TimelineMessage:
        with self._lock:
            if transport_message_id in self.failing_transport_ids:
                raise PersistenceFailure(f"Simulated failure for {transport_message_id}")
            if conversation_id not in self._conversations:
                raise PersistenceFailure(f"Conversation {conversation_id} does not exist")
            if transport_message_id and transport_message_id in self._by_transport_id:
                raise DuplicateTransportId(transport_message_id)
            message = schemas.TimelineMessage(
                id=self._next_id("message"),
                conversation_id=conversation_id,
                sender_type=sender_type,
                sender_name=sender_name,
                content=content,
                message_kind=message_kind,
                transport_message_id=transport_message_id,
                status=status,
                metadata=dict(metadata),
                created_at=created_at,
            )
            self._messages[message.id] = message
            if transport_message_id:
                self._by_transport_id[transport_message_id] = message.id
            return message.model_copy()

    def update_message_delivery(
        self,
        message_id: int,
        *,
        status: MessageStatus,
        transport_message_id: Optional[str] = None,
    ) -> schemas.TimelineMessage:
        with self._lock:
            message = self._messages.get(message_id)
            if message is None:
                raise PersistenceFailure(f"Message {message_id} not found")
            changes: Dict[str, Any] = {"status": status}
            if transport_message_id is not None:
                owner = self._by_transport_id.get(transport_message_id)
                if owner is not None and owner != message_id:
                    raise DuplicateTransportId(transport_message_id)
                changes["transport_message_id"] = transport_message_id
                self._by_transport_id[transport_message_id] = message_id
            updated = message.model_copy(update=changes)
            self._messages[message_id] = updated
            return updated.model_copy()

    def list_messages(
        self, conversation_id: int, limit: int = 200
    ) -> List[schemas.TimelineMessage]:
        with self._lock:
            items = sorted(
                (m for m in self._messages.values() if m.conversation_id == conversation_id),
                key=lambda m: (m.created_at, m.id),
            )
            return [m.model_copy() for m in items[:limit]]

    def append_channel_entry(
        self,
        *,
        agent_id: int,
        transport_message_id: str,
        from_agent: bool,
        content: Optional[str],
        message_kind: MessageKind,
        media_url: Optional[str],
        conversation_id: Optional[int],
        customer_contact: Optional[str],
        sent_at: datetime,
    ) -> schemas.AgentChannelEntry:
        with self._lock:
            entry = schemas.AgentChannelEntry(
                id=self._next_id("entry"),
                agent_id=agent_id,
                transport_message_id=transport_message_id,
                from_agent=from_agent,
                content=content,
                message_kind=message_kind,
                media_url=media_url,
                conversation_id=conversation_id,
                customer_contact=customer_contact,
                sent_at=sent_at,
            )
            self._entries[entry.id] = entry
            return entry.model_copy()

    def list_channel_entries(
        self, limit: int, *, after_id: Optional[int] = None
    ) -> List[schemas.AgentChannelEntry]:
        with self._lock:
            entries = sorted(self._entries.values(), key=lambda e: e.id)
            if after_id is not None:
                entries = [e for e in entries if e.id > after_id]
            return [e.model_copy() for e in entries[:limit]]

    def channel_stats(self) -> schemas.ReconciliationStats:
        with self._lock:
            total = len(self._entries)
            synced = sum(
                1 for e in self._entries.values() if e.transport_message_id in self._by_transport_id
            )
        return schemas.ReconciliationStats(
            channel_entries=total, synced_entries=synced, pending_entries=total - synced
        )


def _to_snapshot(row: Conversation) -> schemas.ConversationSnapshot:
    return schemas.ConversationSnapshot(
        id=row.id,
        customer_contact=row.customer_contact,
        customer_name=row.customer_name,
        status=ConversationStatus(row.status),
        lead_temperature=row.lead_temperature,
        assigned_agent_id=row.assigned_agent_id,
        source=row.source,
        created_at=as_utc(row.created_at),
        updated_at=as_utc(row.updated_at),
        closed_at=as_utc_optional(row.closed_at),
    )


def _to_message(row: Message) -> schemas.TimelineMessage:
    return schemas.TimelineMessage(
        id=row.id,
        conversation_id=row.conversation_id,
        sender_type=SenderType(row.sender_type),
        sender_name=row.sender_name,
        content=row.content,
        message_kind=MessageKind(row.message_kind),
        transport_message_id=row.transport_message_id,
        status=MessageStatus(row.status),
        metadata=dict(row.meta or {}),
        created_at=as_utc(row.created_at),
    )


def _to_entry(row: AgentChannelLogEntry) -> schemas.AgentChannelEntry:
    return schemas.AgentChannelEntry(
        id=row.id,
        conversation_id=row.conversation_id,
        customer_contact=row.customer_contact,
        transport_message_id=row.transport_message_id,
        from_agent=row.from_agent,
        content=row.content,
        message_kind=MessageKind(row.message_kind),
        media_url=row.media_url,
        agent_id=row.agent_id,
        sent_at=as_utc(row.sent_at),
    )


def _to_notice(row: ControlNotice) -> schemas.ControlNoticeView:
    return schemas.ControlNoticeView(
        id=row.id,
        conversation_id=row.conversation_id,
        kind=row.kind,
        from_status=ConversationStatus(row.from_status),
        to_status=ConversationStatus(row.to_status),
        actor=row.actor,
        recipient_agent_id=row.recipient_agent_id,
        details=dict(row.details or {}),
        created_at=as_utc(row.created_at),
    )
