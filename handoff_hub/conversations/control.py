"""Conversation ownership state machine.

A conversation is owned by exactly one party at a time: the bot, the
operator desk (``manual`` or ``waiting``) or a single assigned seller. Every
status write goes through :meth:`ConversationRepository.compare_and_set_status`
so concurrent callers racing on the same conversation produce at most one
winner; the loser observes :class:`ConflictingTransition`.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from pydantic import ValidationError

from ..agents.repository import SalesAgentRepository
from ..core.clock import Clock, as_utc, utcnow
from ..delivery.credentials import CredentialResolver
from ..delivery.transport import MessageTransport
from ..errors import (
    AgentUnavailable,
    ConflictingTransition,
    ControlRequired,
    ConversationNotFound,
    DuplicateTransportId,
    InvalidEvent,
    InvalidTransition,
    PersistenceFailure,
    TransportFailure,
)
from . import schemas
from .models import (
    ALLOWED_TRANSITIONS,
    HUMAN_SENDERS,
    OWNED_STATUSES_BY_ROLE,
    SYSTEM_ACTOR,
    Actor,
    ActorRole,
    ConversationStatus,
    InboundEvent,
    MessageKind,
    MessageStatus,
    PendingSend,
    SenderType,
    TransitionEvent,
)
from .repository import ConversationRepository

logger = logging.getLogger(__name__)

TransitionDispatcher = Callable[[TransitionEvent], None]

MEDIA_PLACEHOLDER = "[media]"


def media_metadata(media_url: str | None, kind: str) -> dict[str, Any]:
    if not media_url:
        return {}
    return {"media": {"url": media_url, "kind": kind}}


class ConversationControl:
    """Arbitrates who may write to a conversation and routes inbound traffic."""

    def __init__(
        self,
        repository: ConversationRepository,
        agents: SalesAgentRepository,
        transport: MessageTransport,
        credentials: CredentialResolver,
        *,
        dispatcher: TransitionDispatcher | None = None,
        clock: Clock = utcnow,
        customer_label: str = "Customer",
        close_attempts: int = 3,
    ) -> None:
        self._repository = repository
        self._agents = agents
        self._transport = transport
        self._credentials = credentials
        self._dispatcher = dispatcher
        self._clock = clock
        self._customer_label = customer_label
        self._close_attempts = max(1, close_attempts)

    # ------------------------------------------------------------------
    # Queries

    def get_conversation(self, conversation_id: int) -> schemas.ConversationSnapshot:
        conversation = self._repository.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFound(
                f"Conversation {conversation_id} not found",
                conversation_id=conversation_id,
            )
        return conversation

    def get_detail(self, conversation_id: int, limit: int = 200) -> schemas.ConversationDetail:
        conversation = self.get_conversation(conversation_id)
        return schemas.ConversationDetail(
            **conversation.model_dump(),
            messages=self._repository.list_messages(conversation_id, limit=limit),
            notices=self._repository.list_notices(conversation_id),
        )

    def list_messages(
        self, conversation_id: int, limit: int = 200
    ) -> list[schemas.TimelineMessage]:
        self.get_conversation(conversation_id)
        return self._repository.list_messages(conversation_id, limit=limit)

    # ------------------------------------------------------------------
    # Ownership transitions

    def take_control(
        self,
        conversation_id: int,
        expected_status: ConversationStatus,
        actor: Actor,
    ) -> schemas.ConversationSnapshot:
        """Move a conversation to ``manual`` if it still has ``expected_status``."""

        current = self.get_conversation(conversation_id)
        if current.status is ConversationStatus.CLOSED:
            raise InvalidTransition(
                f"Conversation {conversation_id} is closed",
                conversation_id=conversation_id,
            )
        if expected_status is ConversationStatus.MANUAL:
            # Someone already holds manual control; a second claim never wins.
            raise ConflictingTransition(
                f"Conversation {conversation_id} is already under manual control",
                conversation_id=conversation_id,
                expected=expected_status.value,
                actual=current.status.value,
            )
        if current.status is not expected_status:
            raise ConflictingTransition(
                f"Conversation {conversation_id} is {current.status.value}, "
                f"not {expected_status.value}",
                conversation_id=conversation_id,
                expected=expected_status.value,
                actual=current.status.value,
            )
        return self._transition(
            current,
            ConversationStatus.MANUAL,
            actor=actor,
            kind="control_taken",
            assigned_agent_id=None,
        )

    def transfer_to_agent(
        self,
        conversation_id: int,
        target_agent_id: int,
        actor: Actor,
        note: str | None = None,
    ) -> schemas.ConversationSnapshot:
        current = self.get_conversation(conversation_id)
        if current.status is not ConversationStatus.MANUAL:
            raise InvalidTransition(
                f"Conversation {conversation_id} must be manual to transfer "
                f"(is {current.status.value})",
                conversation_id=conversation_id,
            )
        agent = self._agents.get_agent(target_agent_id)
        if agent is None or not agent.is_active:
            raise AgentUnavailable(
                f"Sales agent {target_agent_id} is not available",
                agent_id=target_agent_id,
            )
        details: dict[str, Any] = {"agent_name": agent.name}
        if note:
            details["note"] = note
        return self._transition(
            current,
            ConversationStatus.SELLER,
            actor=actor,
            kind="transferred",
            assigned_agent_id=agent.id,
            recipient_agent_id=agent.id,
            details=details,
        )

    def close(
        self,
        conversation_id: int,
        actor: Actor,
        reason: str | None = None,
    ) -> schemas.ConversationSnapshot:
        """Close a conversation; closing a closed conversation changes nothing."""

        details = {"reason": reason} if reason else {}
        for _ in range(self._close_attempts):
            current = self.get_conversation(conversation_id)
            if current.status is ConversationStatus.CLOSED:
                return current
            updated = self._try_transition(
                current,
                ConversationStatus.CLOSED,
                actor=actor,
                kind="closed",
                assigned_agent_id=None,
                recipient_agent_id=current.assigned_agent_id,
                details=details,
            )
            if updated is not None:
                return updated
        raise ConflictingTransition(
            f"Conversation {conversation_id} kept changing while closing",
            conversation_id=conversation_id,
        )

    # ------------------------------------------------------------------
    # Inbound traffic

    def record_inbound(self, event: InboundEvent) -> schemas.IngestResult:
        """Route a normalized inbound message.

        Events seen on a sales agent's own binding (``agent_id`` set) land in
        the agent-channel log, where ``sender_contact`` is the customer on the
        other end, and reach the timeline through reconciliation. Everything
        else is a customer writing to the business number.
        """

        if event.agent_id is not None:
            return self._record_agent_channel(event)

        if event.transport_message_id:
            existing = self._repository.get_message_by_transport_id(event.transport_message_id)
            if existing is not None:
                return self._duplicate(existing)

        conversation = self._resolve_conversation(event)
        metadata: dict[str, Any] = {"source": event.source}
        metadata.update(media_metadata(event.media_url, event.message_kind.value))
        try:
            message = self._repository.add_message(
                conversation.id,
                sender_type=SenderType.CLIENT,
                sender_name=event.sender_name or self._customer_label,
                content=event.content or MEDIA_PLACEHOLDER,
                message_kind=event.message_kind,
                transport_message_id=event.transport_message_id,
                status=MessageStatus.RECEIVED,
                metadata=metadata,
                created_at=as_utc(event.timestamp),
            )
        except DuplicateTransportId as exc:
            existing = self._repository.get_message_by_transport_id(exc.transport_message_id)
            if existing is None:
                raise
            return self._duplicate(existing)

        if conversation.status is ConversationStatus.MANUAL:
            updated = self._try_transition(
                conversation,
                ConversationStatus.WAITING,
                actor=SYSTEM_ACTOR,
                kind="waiting",
                assigned_agent_id=None,
            )
            if updated is None:
                logger.info(
                    "Conversation %s changed owner while a customer message arrived",
                    conversation.id,
                )
                updated = self.get_conversation(conversation.id)
            conversation = updated
        else:
            self._repository.touch(conversation.id, self._clock())
            conversation = self.get_conversation(conversation.id)

        return schemas.IngestResult(
            routed_to="timeline", conversation=conversation, message=message
        )

    def _record_agent_channel(self, event: InboundEvent) -> schemas.IngestResult:
        assert event.agent_id is not None
        if not event.transport_message_id:
            raise InvalidEvent("Agent-channel events require a transport message id")
        conversation_id = event.conversation_hint
        if conversation_id is None:
            open_conversation = self._repository.find_open_conversation(
                event.sender_contact, agent_id=event.agent_id
            )
            conversation_id = open_conversation.id if open_conversation else None
        entry = self._repository.append_channel_entry(
            agent_id=event.agent_id,
            transport_message_id=event.transport_message_id,
            from_agent=event.from_agent,
            content=event.content,
            message_kind=event.message_kind,
            media_url=event.media_url,
            conversation_id=conversation_id,
            customer_contact=event.sender_contact,
            sent_at=as_utc(event.timestamp),
        )
        logger.debug(
            "Logged agent-channel message %s for agent %s", entry.id, event.agent_id
        )
        return schemas.IngestResult(routed_to="agent_channel", channel_entry=entry)

    def _resolve_conversation(self, event: InboundEvent) -> schemas.ConversationSnapshot:
        if event.conversation_hint is not None:
            hinted = self._repository.get_conversation(event.conversation_hint)
            if hinted is not None and hinted.status is not ConversationStatus.CLOSED:
                return hinted
        existing = self._repository.find_open_conversation(event.sender_contact)
        if existing is not None:
            return existing
        logger.info("Starting conversation for %s", event.sender_contact)
        return self._repository.create_conversation(
            event.sender_contact,
            customer_name=event.sender_name,
            source=event.source,
            created_at=self._clock(),
        )

    def _duplicate(self, message: schemas.TimelineMessage) -> schemas.IngestResult:
        return schemas.IngestResult(
            routed_to="timeline",
            duplicate=True,
            conversation=self._repository.get_conversation(message.conversation_id),
            message=message,
        )

    # ------------------------------------------------------------------
    # Outbound messages

    def send_message(
        self,
        conversation_id: int,
        content: str,
        actor: Actor,
        pending: PendingSend | None = None,
    ) -> schemas.TimelineMessage:
        """Send ``content`` to the customer as ``actor``.

        ``pending`` is settled with the durable message id on success and
        discarded when the transport fails.
        """

        current = self.get_conversation(conversation_id)
        self._ensure_owner(current, actor)
        credential = self._credentials.resolve(actor.credential_identity)
        if pending is None:
            pending = PendingSend(
                conversation_id=conversation_id,
                content=content,
                sender_type=actor.sender_type,
                sender_name=actor.display_name,
            )
        message = self._repository.add_message(
            conversation_id,
            sender_type=actor.sender_type,
            sender_name=actor.display_name,
            content=content,
            message_kind=MessageKind.TEXT,
            transport_message_id=None,
            status=MessageStatus.SENDING,
            metadata={"temp_id": pending.temp_id, "actor": actor.identity},
            created_at=self._clock(),
        )
        try:
            transport_id = self._transport.send_text(
                credential, current.customer_contact, content
            )
        except TransportFailure as exc:
            self._repository.update_message_delivery(message.id, status=MessageStatus.FAILED)
            self._repository.checkpoint()
            pending.discard(exc.message)
            logger.warning(
                "Send to conversation %s failed: %s", conversation_id, exc.message
            )
            raise
        try:
            message = self._repository.update_message_delivery(
                message.id, status=MessageStatus.SENT, transport_message_id=transport_id
            )
        except DuplicateTransportId:
            # Reconciliation projected the echo of this send first.
            logger.warning(
                "Transport id %s already on the timeline; keeping message %s without it",
                transport_id,
                message.id,
            )
            message = self._repository.update_message_delivery(
                message.id, status=MessageStatus.SENT
            )
        pending.settle(message.id)

        if current.status is ConversationStatus.WAITING and HUMAN_SENDERS[actor.sender_type]:
            if self._try_transition(
                current,
                ConversationStatus.MANUAL,
                actor=actor,
                kind="control_resumed",
                assigned_agent_id=None,
            ) is None:
                logger.info(
                    "Conversation %s left waiting concurrently; status untouched",
                    conversation_id,
                )
        return message

    def _ensure_owner(self, conversation: schemas.ConversationSnapshot, actor: Actor) -> None:
        owned = OWNED_STATUSES_BY_ROLE[actor.role]
        allowed = conversation.status in owned
        if allowed and actor.role is ActorRole.SELLER:
            allowed = (
                actor.agent_id is not None
                and conversation.assigned_agent_id == actor.agent_id
            )
        if not allowed:
            raise ControlRequired(
                f"{actor.identity} does not control conversation {conversation.id} "
                f"(status {conversation.status.value})",
                conversation_id=conversation.id,
                status=conversation.status.value,
            )

    # ------------------------------------------------------------------
    # Helpers

    def _transition(
        self,
        current: schemas.ConversationSnapshot,
        new: ConversationStatus,
        **kwargs: Any,
    ) -> schemas.ConversationSnapshot:
        updated = self._try_transition(current, new, **kwargs)
        if updated is not None:
            return updated
        latest = self.get_conversation(current.id)
        if latest.status is ConversationStatus.CLOSED:
            raise InvalidTransition(
                f"Conversation {current.id} was closed concurrently",
                conversation_id=current.id,
            )
        raise ConflictingTransition(
            f"Conversation {current.id} changed from {current.status.value} "
            f"to {latest.status.value}",
            conversation_id=current.id,
            expected=current.status.value,
            actual=latest.status.value,
        )

    def _try_transition(
        self,
        current: schemas.ConversationSnapshot,
        new: ConversationStatus,
        *,
        actor: Actor,
        kind: str,
        assigned_agent_id: int | None,
        recipient_agent_id: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> schemas.ConversationSnapshot | None:
        """Compare-and-set ``current.status -> new``; ``None`` when another writer won."""

        if new not in ALLOWED_TRANSITIONS[current.status]:
            raise InvalidTransition(
                f"Cannot move conversation {current.id} from "
                f"{current.status.value} to {new.value}",
                conversation_id=current.id,
            )
        now = self._clock()
        closed_at = now if new is ConversationStatus.CLOSED else None
        try:
            schemas.ConversationSnapshot.model_validate(
                {**current.model_dump(), "status": new, "assigned_agent_id": assigned_agent_id}
            )
        except ValidationError as exc:
            raise PersistenceFailure(f"Refusing inconsistent write: {exc}") from exc

        won = self._repository.compare_and_set_status(
            current.id,
            current.status,
            new,
            assigned_agent_id=assigned_agent_id,
            updated_at=now,
            closed_at=closed_at,
        )
        if not won:
            return None

        notice_details = dict(details or {})
        if current.assigned_agent_id is not None and current.assigned_agent_id != assigned_agent_id:
            notice_details.setdefault("previous_agent_id", current.assigned_agent_id)
        notice = self._repository.record_notice(
            current.id,
            kind=kind,
            from_status=current.status,
            to_status=new,
            actor=actor.identity,
            recipient_agent_id=recipient_agent_id,
            details=notice_details,
            created_at=now,
        )
        logger.info(
            "Conversation %s: %s -> %s by %s",
            current.id,
            current.status.value,
            new.value,
            actor.identity,
        )
        self._dispatch(
            TransitionEvent(
                conversation_id=current.id,
                kind=kind,
                from_status=current.status,
                to_status=new,
                actor=actor.identity,
                notice_id=notice.id,
                occurred_at=now,
                previous_agent_id=current.assigned_agent_id,
                assigned_agent_id=assigned_agent_id,
                details=notice_details,
            )
        )
        return self.get_conversation(current.id)

    def _dispatch(self, event: TransitionEvent) -> None:
        if self._dispatcher is None:
            return
        try:
            self._dispatcher(event)
        except Exception:
            logger.exception(
                "Transition dispatcher failed for conversation %s", event.conversation_id
            )


__all__ = ["ConversationControl", "MEDIA_PLACEHOLDER", "TransitionDispatcher", "media_metadata"]
