"""Assemble the services that share one database session."""

from __future__ import annotations

import dataclasses
import time
from datetime import timedelta
from typing import Callable

from sqlalchemy.orm import Session

from .agents.repository import SqlSalesAgentRepository
from .config import Settings, get_settings
from .conversations.control import ConversationControl, TransitionDispatcher
from .conversations.notifier import TransitionNotifier
from .conversations.reconciliation import ReconciliationEngine
from .conversations.repository import SqlConversationRepository
from .core.clock import Clock, utcnow
from .delivery.credentials import CredentialResolver
from .delivery.repository import SqlDeliveryLogRepository
from .delivery.service import DeliveryCoordinator
from .delivery.transport import HttpTransport, MessageTransport
from .security.audit import SqlAuditLogRepository
from .security.emergency_tokens import EmergencyTokenValidator
from .security.rate_limit import LoginRateLimiter


@dataclasses.dataclass
class ServiceBundle:
    control: ConversationControl
    reconciliation: ReconciliationEngine
    delivery: DeliveryCoordinator
    notifier: TransitionNotifier
    agents: SqlSalesAgentRepository
    audit_log: SqlAuditLogRepository
    rate_limiter: LoginRateLimiter
    token_validator: EmergencyTokenValidator


def default_transport(settings: Settings | None = None) -> MessageTransport:
    settings = settings or get_settings()
    return HttpTransport(
        settings.transport_base_url, timeout=settings.transport_timeout_seconds
    )


def build_services(
    session: Session,
    settings: Settings | None = None,
    *,
    transport: MessageTransport | None = None,
    dispatcher: TransitionDispatcher | None = None,
    clock: Clock = utcnow,
    sleep: Callable[[float], None] = time.sleep,
) -> ServiceBundle:
    settings = settings or get_settings()
    transport = transport or default_transport(settings)
    agents = SqlSalesAgentRepository(session)
    conversations = SqlConversationRepository(session)
    credentials = CredentialResolver(settings, agents)
    delivery = DeliveryCoordinator(
        SqlDeliveryLogRepository(session),
        transport,
        credentials,
        clock=clock,
        sleep=sleep,
        pacing_seconds=settings.resend_pacing_seconds,
    )
    audit_log = SqlAuditLogRepository(session)
    return ServiceBundle(
        control=ConversationControl(
            conversations,
            agents,
            transport,
            credentials,
            dispatcher=dispatcher,
            clock=clock,
            customer_label=settings.customer_label,
        ),
        reconciliation=ReconciliationEngine(
            conversations, agents, customer_label=settings.customer_label, clock=clock
        ),
        delivery=delivery,
        notifier=TransitionNotifier(delivery, agents, conversations),
        agents=agents,
        audit_log=audit_log,
        rate_limiter=LoginRateLimiter(
            audit_log,
            max_attempts=settings.login_max_attempts,
            window=timedelta(minutes=settings.login_window_minutes),
            clock=clock,
        ),
        token_validator=EmergencyTokenValidator(
            settings.emergency_token_secret, clock=clock
        ),
    )


__all__ = ["ServiceBundle", "build_services", "default_transport"]
