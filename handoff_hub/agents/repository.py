"""Read access to sales agent profiles."""

from __future__ import annotations

from typing import List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.clock import as_utc, utcnow
from ..errors import PersistenceFailure
from ..models import SalesAgent
from . import schemas


class SalesAgentRepository(Protocol):
    """Abstraction over the sales agent directory."""

    def get_agent(self, agent_id: int) -> Optional[schemas.SalesAgentProfile]: ...

    def get_transport_token(self, agent_id: int) -> Optional[str]: ...

    def list_active(self) -> List[schemas.SalesAgentProfile]: ...

    def create_agent(self, payload: schemas.SalesAgentCreate) -> schemas.SalesAgentProfile: ...


class SqlSalesAgentRepository:
    """SQLAlchemy implementation of :class:`SalesAgentRepository`."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_agent(self, agent_id: int) -> Optional[schemas.SalesAgentProfile]:
        try:
            row = self._session.get(SalesAgent, agent_id)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to load agent {agent_id}") from exc
        return _to_profile(row) if row is not None else None

    def get_transport_token(self, agent_id: int) -> Optional[str]:
        try:
            row = self._session.get(SalesAgent, agent_id)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to load agent {agent_id}") from exc
        if row is None or not row.is_active:
            return None
        return row.transport_token

    def list_active(self) -> List[schemas.SalesAgentProfile]:
        try:
            rows = self._session.execute(
                select(SalesAgent)
                .where(SalesAgent.is_active.is_(True))
                .order_by(SalesAgent.name)
            ).scalars()
            return [_to_profile(row) for row in rows]
        except SQLAlchemyError as exc:
            raise PersistenceFailure("Failed to list agents") from exc

    def create_agent(self, payload: schemas.SalesAgentCreate) -> schemas.SalesAgentProfile:
        row = SalesAgent(
            name=payload.name,
            contact_number=payload.contact_number,
            transport_token=payload.transport_token,
            is_active=payload.is_active,
        )
        try:
            self._session.add(row)
            self._session.flush()
        except SQLAlchemyError as exc:
            raise PersistenceFailure("Failed to create agent") from exc
        return _to_profile(row)


class InMemorySalesAgentRepository:
    def __init__(self) -> None:
        self._agents: dict[int, schemas.SalesAgentProfile] = {}
        self._tokens: dict[int, Optional[str]] = {}
        self._next_id = 1

    def get_agent(self, agent_id: int) -> Optional[schemas.SalesAgentProfile]:
        agent = self._agents.get(agent_id)
        return agent.model_copy() if agent else None

    def get_transport_token(self, agent_id: int) -> Optional[str]:
        agent = self._agents.get(agent_id)
        if agent is None or not agent.is_active:
            return None
        return self._tokens.get(agent_id)

    def list_active(self) -> List[schemas.SalesAgentProfile]:
        return sorted(
            (a.model_copy() for a in self._agents.values() if a.is_active),
            key=lambda a: a.name,
        )

    def create_agent(self, payload: schemas.SalesAgentCreate) -> schemas.SalesAgentProfile:
        agent = schemas.SalesAgentProfile(
            id=self._next_id,
            name=payload.name,
            contact_number=payload.contact_number,
            is_active=payload.is_active,
            has_transport_token=bool(payload.transport_token),
            created_at=utcnow(),
        )
        self._agents[agent.id] = agent
        self._tokens[agent.id] = payload.transport_token
        self._next_id += 1
        return agent.model_copy()


def _to_profile(row: SalesAgent) -> schemas.SalesAgentProfile:
    return schemas.SalesAgentProfile(
        id=row.id,
        name=row.name,
        contact_number=row.contact_number,
        is_active=row.is_active,
        has_transport_token=bool(row.transport_token),
        created_at=as_utc(row.created_at),
    )
