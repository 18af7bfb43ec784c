"""Project the agent-channel log into the unified timeline.

Messages a seller exchanges on their own channel binding are recorded in the
agent-channel log first. :class:`ReconciliationEngine` copies every entry the
timeline does not know yet, keyed by transport message id, so running it any
number of times (or concurrently with inbound traffic) yields each message
exactly once.
"""

from __future__ import annotations

import logging
from threading import Event
from typing import Any

from ..agents.repository import SalesAgentRepository
from ..core.clock import Clock, utcnow
from ..errors import DuplicateTransportId, PersistenceFailure
from . import schemas
from .control import MEDIA_PLACEHOLDER, media_metadata
from .models import MessageStatus, SenderType
from .repository import ConversationRepository

logger = logging.getLogger(__name__)

SYNCED = "synced"
SKIPPED = "skipped"


class ReconciliationEngine:
    def __init__(
        self,
        repository: ConversationRepository,
        agents: SalesAgentRepository,
        *,
        customer_label: str = "Customer",
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._agents = agents
        self._customer_label = customer_label
        self._clock = clock

    def reconcile(
        self,
        batch_limit: int = 100,
        *,
        after_id: int | None = None,
        cancel_event: Event | None = None,
    ) -> schemas.ReconciliationReport:
        """Synchronize up to ``batch_limit`` entries, oldest first.

        Each entry is committed on its own, so stopping between entries (via
        ``cancel_event``) never leaves a half-applied batch behind. Pass the
        returned ``last_entry_id`` as ``after_id`` to continue.
        """

        report = schemas.ReconciliationReport()
        entries = self._repository.list_channel_entries(batch_limit, after_id=after_id)
        agent_names: dict[int, str] = {}
        for entry in entries:
            if cancel_event is not None and cancel_event.is_set():
                report.cancelled = True
                logger.info("Reconciliation cancelled after entry %s", report.last_entry_id)
                break
            report.scanned += 1
            report.last_entry_id = entry.id
            try:
                outcome = self._reconcile_entry(entry, agent_names)
                self._repository.checkpoint()
            except PersistenceFailure as exc:
                self._repository.rollback()
                report.failed += 1
                logger.warning(
                    "Failed to reconcile agent-channel entry %s: %s", entry.id, exc.message
                )
                continue
            if outcome == SYNCED:
                report.synced += 1
            else:
                report.skipped += 1

        logger.info(
            "Reconciliation scanned=%s synced=%s skipped=%s failed=%s",
            report.scanned,
            report.synced,
            report.skipped,
            report.failed,
        )
        return report

    def stats(self) -> schemas.ReconciliationStats:
        return self._repository.channel_stats()

    def _reconcile_entry(
        self, entry: schemas.AgentChannelEntry, agent_names: dict[int, str]
    ) -> str:
        if self._repository.get_message_by_transport_id(entry.transport_message_id):
            return SKIPPED

        conversation_id = entry.conversation_id
        if conversation_id is None and entry.customer_contact:
            conversation = self._repository.find_open_conversation(
                entry.customer_contact, agent_id=entry.agent_id
            )
            conversation_id = conversation.id if conversation else None
        if conversation_id is None:
            logger.debug("No conversation for agent-channel entry %s", entry.id)
            return SKIPPED

        if entry.from_agent:
            sender_type = SenderType.SELLER
            sender_name = self._agent_name(entry.agent_id, agent_names)
        else:
            sender_type = SenderType.CLIENT
            sender_name = self._customer_label

        metadata: dict[str, Any] = {
            "channel_entry_id": entry.id,
            "agent_id": entry.agent_id,
            "source": "agent_channel",
            "original_timestamp": entry.sent_at.isoformat(),
            "synced_at": self._clock().isoformat(),
        }
        metadata.update(media_metadata(entry.media_url, entry.message_kind.value))
        try:
            self._repository.add_message(
                conversation_id,
                sender_type=sender_type,
                sender_name=sender_name,
                content=entry.content or MEDIA_PLACEHOLDER,
                message_kind=entry.message_kind,
                transport_message_id=entry.transport_message_id,
                status=MessageStatus.RECEIVED,
                metadata=metadata,
                created_at=entry.sent_at,
            )
        except DuplicateTransportId:
            # A concurrent writer got there first; the message is on the timeline.
            return SYNCED
        return SYNCED

    def _agent_name(self, agent_id: int, cache: dict[int, str]) -> str:
        if agent_id not in cache:
            agent = self._agents.get_agent(agent_id)
            cache[agent_id] = agent.name if agent else f"Agent {agent_id}"
        return cache[agent_id]


__all__ = ["ReconciliationEngine"]
