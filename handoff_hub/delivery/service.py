"""Outbound notifications with an auditable delivery log and a resend job."""

from __future__ import annotations

import logging
import re
import time
from datetime import timedelta
from threading import Event
from typing import Any, Callable

from ..core.clock import Clock, utcnow
from ..errors import CredentialMissing, TransportFailure
from . import schemas
from .credentials import SYSTEM_IDENTITY, CredentialResolver
from .repository import DeliveryLogRepository
from .transport import MessageTransport

logger = logging.getLogger(__name__)

NOTIFICATION = "notification"
RESEND_NOTIFICATION = "resend_notification"
RESEND_SUMMARY = "resend_summary"
RESEND_REASON = "missing_transport_message_id"

_NON_DIGITS = re.compile(r"\D+")


def normalize_recipient(recipient: str) -> str:
    """Keep only the digits of a phone number."""

    return _NON_DIGITS.sub("", recipient or "")


class DeliveryCoordinator:
    """Send notifications through the transport and log every attempt.

    A logged attempt either carries the transport message id (``sent``) or a
    null id with the error in its metadata (``failed``); the latter are what
    :meth:`resend_failed` re-drives.
    """

    def __init__(
        self,
        repository: DeliveryLogRepository,
        transport: MessageTransport,
        credentials: CredentialResolver,
        *,
        clock: Clock = utcnow,
        sleep: Callable[[float], None] = time.sleep,
        pacing_seconds: float = 1.0,
    ) -> None:
        self._repository = repository
        self._transport = transport
        self._credentials = credentials
        self._clock = clock
        self._sleep = sleep
        self._pacing_seconds = pacing_seconds

    def send(
        self,
        recipient: str,
        content: str,
        context_type: str = NOTIFICATION,
        metadata: dict[str, Any] | None = None,
        *,
        sender_identity: str = SYSTEM_IDENTITY,
        resend_of_id: int | None = None,
    ) -> schemas.DeliveryResult:
        credential = self._credentials.resolve(sender_identity)
        number = normalize_recipient(recipient)
        meta = dict(metadata or {})
        try:
            if not number:
                raise TransportFailure(f"Recipient {recipient!r} has no digits")
            transport_id = self._transport.send_text(credential, number, content)
        except TransportFailure as exc:
            meta["error"] = exc.message
            entry = self._repository.add_entry(
                sender_identity=sender_identity,
                recipient=number or recipient,
                content=content,
                context_type=context_type,
                status="failed",
                transport_message_id=None,
                metadata=meta,
                created_at=self._clock(),
                resend_of_id=resend_of_id,
            )
            self._repository.checkpoint()
            logger.warning(
                "Delivery %s to %s failed: %s", entry.id, number or recipient, exc.message
            )
            exc.details["log_id"] = entry.id
            raise

        entry = self._repository.add_entry(
            sender_identity=sender_identity,
            recipient=number,
            content=content,
            context_type=context_type,
            status="sent",
            transport_message_id=transport_id,
            metadata=meta,
            created_at=self._clock(),
            resend_of_id=resend_of_id,
        )
        self._repository.checkpoint()
        logger.info("Delivery %s to %s acknowledged as %s", entry.id, number, transport_id)
        return schemas.DeliveryResult(
            log_id=entry.id, status="sent", transport_message_id=transport_id
        )

    def resend_failed(
        self,
        lookback: timedelta = timedelta(hours=24),
        limit: int = 100,
        *,
        cancel_event: Event | None = None,
    ) -> schemas.ResendSummary:
        """Re-send every unacknowledged notification from the lookback window once."""

        since = self._clock() - lookback
        candidates = self._repository.list_unacknowledged(NOTIFICATION, since=since, limit=limit)
        logger.info("Found %s unacknowledged notifications since %s", len(candidates), since)

        summary = schemas.ResendSummary()
        for index, original in enumerate(candidates):
            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True
                break
            if index:
                self._sleep(self._pacing_seconds)
            metadata = {
                "original_log_id": original.id,
                "resend_reason": RESEND_REASON,
                "original_timestamp": original.created_at.isoformat(),
                **original.metadata,
            }
            metadata.pop("error", None)
            try:
                result = self.send(
                    original.recipient,
                    original.content,
                    RESEND_NOTIFICATION,
                    metadata,
                    sender_identity=original.sender_identity,
                    resend_of_id=original.id,
                )
                item = schemas.ResendItem(
                    original_log_id=original.id,
                    recipient=original.recipient,
                    status="success",
                    transport_message_id=result.transport_message_id,
                    log_id=result.log_id,
                )
            except (TransportFailure, CredentialMissing) as exc:
                item = schemas.ResendItem(
                    original_log_id=original.id,
                    recipient=original.recipient,
                    status="failed",
                    log_id=exc.details.get("log_id"),
                    error=exc.message,
                )
            except Exception as exc:
                logger.exception("Critical error re-sending delivery %s", original.id)
                self._repository.rollback()
                item = schemas.ResendItem(
                    original_log_id=original.id,
                    recipient=original.recipient,
                    status="critical_error",
                    error=str(exc),
                )
            summary.results.append(item)

        summary.total_processed = len(summary.results)
        summary.success_count = sum(1 for r in summary.results if r.status == "success")
        summary.failed_count = summary.total_processed - summary.success_count

        entry = self._repository.add_entry(
            sender_identity=SYSTEM_IDENTITY,
            recipient="admin",
            content=(
                f"Resend of failed notifications: {summary.success_count} succeeded, "
                f"{summary.failed_count} failed"
            ),
            context_type=RESEND_SUMMARY,
            status="completed",
            transport_message_id=None,
            metadata={
                "total_processed": summary.total_processed,
                "success_count": summary.success_count,
                "failed_count": summary.failed_count,
                "results": [r.model_dump(mode="json") for r in summary.results],
            },
            created_at=self._clock(),
        )
        self._repository.checkpoint()
        summary.summary_log_id = entry.id
        logger.info(
            "Resend finished: %s/%s succeeded",
            summary.success_count,
            summary.total_processed,
        )
        return summary


__all__ = [
    "DeliveryCoordinator",
    "NOTIFICATION",
    "RESEND_NOTIFICATION",
    "RESEND_SUMMARY",
    "normalize_recipient",
]
