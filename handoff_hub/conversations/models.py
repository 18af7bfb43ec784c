"""Domain types used by the conversation control and reconciliation services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from ..core.clock import utcnow


class ConversationStatus(str, Enum):
    BOT = "bot"
    MANUAL = "manual"
    SELLER = "seller"
    WAITING = "waiting"
    CLOSED = "closed"


class SenderType(str, Enum):
    CLIENT = "client"
    BOT = "bot"
    OPERATOR = "operator"
    SELLER = "seller"
    ADMIN = "admin"


class MessageKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    AUDIO = "audio"
    VIDEO = "video"


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    RECEIVED = "received"


class ActorRole(str, Enum):
    """Who is acting on a conversation through the API."""

    BOT = "bot"
    SELLER = "seller"
    OPERATOR = "operator"
    ADMIN = "admin"


#: Status changes the control state machine accepts. ``closed`` is absorbing.
ALLOWED_TRANSITIONS: dict[ConversationStatus, frozenset[ConversationStatus]] = {
    ConversationStatus.BOT: frozenset(
        {ConversationStatus.MANUAL, ConversationStatus.CLOSED}
    ),
    ConversationStatus.MANUAL: frozenset(
        {ConversationStatus.SELLER, ConversationStatus.WAITING, ConversationStatus.CLOSED}
    ),
    ConversationStatus.SELLER: frozenset(
        {ConversationStatus.MANUAL, ConversationStatus.CLOSED}
    ),
    ConversationStatus.WAITING: frozenset(
        {ConversationStatus.MANUAL, ConversationStatus.CLOSED}
    ),
    ConversationStatus.CLOSED: frozenset(),
}

#: Timeline sender type written for messages sent by each actor role.
SENDER_TYPE_BY_ROLE: dict[ActorRole, SenderType] = {
    ActorRole.BOT: SenderType.BOT,
    ActorRole.SELLER: SenderType.SELLER,
    ActorRole.OPERATOR: SenderType.OPERATOR,
    ActorRole.ADMIN: SenderType.ADMIN,
}

#: Conversation statuses in which each actor role may write to the customer.
OWNED_STATUSES_BY_ROLE: dict[ActorRole, frozenset[ConversationStatus]] = {
    ActorRole.BOT: frozenset({ConversationStatus.BOT}),
    ActorRole.SELLER: frozenset({ConversationStatus.SELLER}),
    ActorRole.OPERATOR: frozenset({ConversationStatus.MANUAL, ConversationStatus.WAITING}),
    ActorRole.ADMIN: frozenset({ConversationStatus.MANUAL, ConversationStatus.WAITING}),
}

#: Whether a sender type counts as a human writing on behalf of the business.
HUMAN_SENDERS: dict[SenderType, bool] = {
    SenderType.CLIENT: False,
    SenderType.BOT: False,
    SenderType.OPERATOR: True,
    SenderType.SELLER: True,
    SenderType.ADMIN: True,
}


@dataclass(frozen=True)
class Actor:
    """Authenticated caller of a state-mutating operation."""

    identity: str
    role: ActorRole
    display_name: str
    agent_id: int | None = None

    @property
    def sender_type(self) -> SenderType:
        return SENDER_TYPE_BY_ROLE[self.role]

    @property
    def credential_identity(self) -> str:
        """Identity whose transport credential carries this actor's messages."""

        if self.role is ActorRole.SELLER and self.agent_id is not None:
            return f"agent:{self.agent_id}"
        return "business"


SYSTEM_ACTOR = Actor(identity="system", role=ActorRole.BOT, display_name="System")


@dataclass
class InboundEvent:
    """Normalized inbound message handed over by the channel integration.

    Events carrying ``agent_id`` were observed on that agent's own channel
    binding and go to the agent-channel log instead of the timeline.
    """

    sender_contact: str
    content: str | None
    transport_message_id: str | None = None
    timestamp: datetime = field(default_factory=utcnow)
    conversation_hint: int | None = None
    sender_name: str | None = None
    message_kind: MessageKind = MessageKind.TEXT
    media_url: str | None = None
    agent_id: int | None = None
    from_agent: bool = False
    source: str = "whatsapp"


@dataclass(frozen=True)
class TransitionEvent:
    """Describes a committed ownership transition for notification fan-out."""

    conversation_id: int
    kind: str
    from_status: ConversationStatus
    to_status: ConversationStatus
    actor: str
    notice_id: int
    occurred_at: datetime
    previous_agent_id: int | None = None
    assigned_agent_id: int | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def recipient_agent_ids(self) -> list[int]:
        """Sellers who gained or lost the conversation."""

        recipients: list[int] = []
        for agent_id in (self.assigned_agent_id, self.previous_agent_id):
            if agent_id is not None and agent_id not in recipients:
                recipients.append(agent_id)
        return recipients


@dataclass
class PendingSend:
    """Caller-local view of an outbound message whose write is in flight.

    Never persisted: it either settles into the durable timeline message or is
    discarded when the send fails.
    """

    conversation_id: int
    content: str
    sender_type: SenderType
    sender_name: str
    temp_id: str = field(default_factory=lambda: f"temp-{uuid4().hex}")
    created_at: datetime = field(default_factory=utcnow)
    state: str = "pending"
    message_id: int | None = None
    error: str | None = None

    def settle(self, message_id: int) -> None:
        self.state = "settled"
        self.message_id = message_id

    def discard(self, error: str) -> None:
        self.state = "discarded"
        self.error = error

    @property
    def is_pending(self) -> bool:
        return self.state == "pending"


__all__ = [
    "ALLOWED_TRANSITIONS",
    "Actor",
    "ActorRole",
    "ConversationStatus",
    "HUMAN_SENDERS",
    "InboundEvent",
    "MessageKind",
    "MessageStatus",
    "OWNED_STATUSES_BY_ROLE",
    "PendingSend",
    "SENDER_TYPE_BY_ROLE",
    "SYSTEM_ACTOR",
    "SenderType",
    "TransitionEvent",
]
