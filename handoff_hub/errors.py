"""Domain errors shared by the conversation, delivery and security layers.

Every error carries a stable ``kind`` tag that API callers can rely on, plus
the HTTP status the FastAPI app answers with. State-machine errors
(:class:`InvalidTransition`, :class:`ConflictingTransition`,
:class:`ControlRequired`) describe caller mistakes and are never retried;
:class:`TransportFailure` and :class:`PersistenceFailure` are transient and
batch jobs count them per item instead of aborting.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "AgentUnavailable",
    "ConflictingTransition",
    "ControlRequired",
    "ConversationNotFound",
    "CredentialMissing",
    "DuplicateTransportId",
    "HandoffError",
    "InvalidEvent",
    "InvalidTransition",
    "PersistenceFailure",
    "TransportFailure",
]


class HandoffError(Exception):
    """Base class for errors surfaced to API callers."""

    kind = "HandoffError"
    status_code = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidTransition(HandoffError):
    """The requested status change is not allowed from the current status."""

    kind = "InvalidTransition"
    status_code = 409


class ConflictingTransition(HandoffError):
    """The conversation no longer has the status the caller expected."""

    kind = "ConflictingTransition"
    status_code = 409


class ControlRequired(HandoffError):
    """The caller does not own the conversation it tried to write to."""

    kind = "ControlRequired"
    status_code = 403


class ConversationNotFound(HandoffError):
    kind = "ConversationNotFound"
    status_code = 404


class AgentUnavailable(HandoffError):
    """Transfer target does not exist or is not active."""

    kind = "AgentUnavailable"
    status_code = 422


class CredentialMissing(HandoffError):
    """No transport credential is configured for the sending identity."""

    kind = "CredentialMissing"
    status_code = 422


class TransportFailure(HandoffError):
    """The external messaging transport rejected or never acknowledged a send."""

    kind = "TransportFailure"
    status_code = 502


class PersistenceFailure(HandoffError):
    """A write to the backing store failed."""

    kind = "PersistenceFailure"
    status_code = 503


class DuplicateTransportId(HandoffError):
    """A timeline message with the same transport message id already exists."""

    kind = "DuplicateTransportId"
    status_code = 409

    def __init__(self, transport_message_id: str) -> None:
        super().__init__(
            f"Message with transport id {transport_message_id!r} already exists",
            transport_message_id=transport_message_id,
        )
        self.transport_message_id = transport_message_id


class InvalidEvent(HandoffError):
    """An inbound event is missing data its route requires."""

    kind = "InvalidEvent"
    status_code = 422
