"""Tell sales agents when a conversation is handed to or taken from them."""

from __future__ import annotations

import logging

from ..agents.repository import SalesAgentRepository
from ..delivery.credentials import NOTIFIER_IDENTITY
from ..delivery.service import NOTIFICATION, DeliveryCoordinator
from ..errors import CredentialMissing, TransportFailure
from .models import ConversationStatus, TransitionEvent
from .repository import ConversationRepository

logger = logging.getLogger(__name__)


class TransitionNotifier:
    def __init__(
        self,
        delivery: DeliveryCoordinator,
        agents: SalesAgentRepository,
        conversations: ConversationRepository,
    ) -> None:
        self._delivery = delivery
        self._agents = agents
        self._conversations = conversations

    def notify(self, event: TransitionEvent) -> int:
        """Send one notification per affected seller; returns how many were acknowledged.

        Failed sends stay in the delivery log with a null transport id and are
        picked up by the resend job.
        """

        conversation = self._conversations.get_conversation(event.conversation_id)
        customer = (
            (conversation.customer_name or conversation.customer_contact)
            if conversation
            else f"#{event.conversation_id}"
        )
        delivered = 0
        for agent_id in event.recipient_agent_ids:
            agent = self._agents.get_agent(agent_id)
            if agent is None or not agent.contact_number:
                logger.info("Agent %s has no contact number; skipping notice", agent_id)
                continue
            content = self._render(event, agent_id, customer)
            try:
                self._delivery.send(
                    agent.contact_number,
                    content,
                    NOTIFICATION,
                    {
                        "conversation_id": event.conversation_id,
                        "notice_id": event.notice_id,
                        "transition": event.kind,
                        "agent_id": agent_id,
                    },
                    sender_identity=NOTIFIER_IDENTITY,
                )
                delivered += 1
            except (TransportFailure, CredentialMissing) as exc:
                logger.warning(
                    "Could not notify agent %s about conversation %s: %s",
                    agent_id,
                    event.conversation_id,
                    exc.message,
                )
        return delivered

    @staticmethod
    def _render(event: TransitionEvent, agent_id: int, customer: str) -> str:
        if event.to_status is ConversationStatus.SELLER and event.assigned_agent_id == agent_id:
            text = f"Conversation with {customer} was transferred to you."
            note = event.details.get("note")
            if note:
                text += f" Note: {note}"
            return text
        if event.to_status is ConversationStatus.CLOSED:
            return f"Conversation with {customer} was closed."
        return f"Conversation with {customer} was taken over by {event.actor}."


__all__ = ["TransitionNotifier"]
