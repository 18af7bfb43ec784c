"""Map sending identities to transport credentials."""

from __future__ import annotations

from ..agents.repository import SalesAgentRepository
from ..config import Settings
from ..errors import CredentialMissing

BUSINESS_IDENTITY = "business"
NOTIFIER_IDENTITY = "notifier"
SYSTEM_IDENTITY = "system"
AGENT_PREFIX = "agent:"


class CredentialResolver:
    """Resolve the credential used to send as a given identity.

    ``business`` sends through the business number, ``notifier`` and
    ``system`` through the notification channel, and ``agent:<id>`` through
    that sales agent's own binding.
    """

    def __init__(self, settings: Settings, agents: SalesAgentRepository) -> None:
        self._settings = settings
        self._agents = agents

    def resolve(self, identity: str) -> str:
        credential: str | None
        if identity == BUSINESS_IDENTITY:
            credential = self._settings.business_transport_token
        elif identity in (NOTIFIER_IDENTITY, SYSTEM_IDENTITY):
            credential = self._settings.notifier_transport_token
        elif identity.startswith(AGENT_PREFIX):
            try:
                agent_id = int(identity[len(AGENT_PREFIX):])
            except ValueError:
                raise CredentialMissing(
                    f"Malformed agent identity {identity!r}", identity=identity
                ) from None
            credential = self._agents.get_transport_token(agent_id)
        else:
            credential = None
        if not credential:
            raise CredentialMissing(
                f"No transport credential configured for {identity!r}",
                identity=identity,
            )
        return credential


__all__ = [
    "AGENT_PREFIX",
    "BUSINESS_IDENTITY",
    "CredentialResolver",
    "NOTIFIER_IDENTITY",
    "SYSTEM_IDENTITY",
]
