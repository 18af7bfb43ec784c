"""Conversation ownership, inbound routing and timeline reconciliation."""

from . import schemas
from .control import ConversationControl, TransitionDispatcher
from .models import (
    Actor,
    ActorRole,
    ConversationStatus,
    InboundEvent,
    PendingSend,
    SenderType,
    TransitionEvent,
)
from .notifier import TransitionNotifier
from .reconciliation import ReconciliationEngine
from .repository import (
    ConversationRepository,
    InMemoryConversationRepository,
    SqlConversationRepository,
)

__all__ = [
    "Actor",
    "ActorRole",
    "ConversationControl",
    "ConversationRepository",
    "ConversationStatus",
    "InMemoryConversationRepository",
    "InboundEvent",
    "PendingSend",
    "ReconciliationEngine",
    "SenderType",
    "SqlConversationRepository",
    "TransitionDispatcher",
    "TransitionEvent",
    "TransitionNotifier",
    "schemas",
]
