"""Process-wide session factory and the request-scoped service context."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..config import get_settings
from ..conversations.control import TransitionDispatcher
from ..errors import HandoffError, PersistenceFailure
from ..models.session import get_sessionmaker
from ..services import ServiceBundle, build_services

logger = logging.getLogger(__name__)

_SESSION_FACTORY: sessionmaker[Session] | None = None


def get_session_factory() -> sessionmaker[Session]:
    """Return the shared session factory, creating it on first use."""

    global _SESSION_FACTORY
    if _SESSION_FACTORY is None:
        url = get_settings().database_url
        if not url:
            raise RuntimeError("DATABASE_URL is not configured.")
        logger.debug("Creating session factory for %s", url.split("@")[-1])
        _SESSION_FACTORY = get_sessionmaker(url, pool_pre_ping=True)
    return _SESSION_FACTORY


def set_session_factory(factory: sessionmaker[Session] | None) -> None:
    """Replace (or clear, with ``None``) the shared factory; used by tests."""

    global _SESSION_FACTORY
    _SESSION_FACTORY = factory


@contextmanager
def service_context(
    dispatcher: TransitionDispatcher | None = None,
) -> Iterator[ServiceBundle]:
    """Services bound to one session that commits on success and rolls back on error."""

    try:
        session = get_session_factory()()
    except RuntimeError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    try:
        yield build_services(session, dispatcher=dispatcher)
        session.commit()
    except (HandoffError, HTTPException):
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("Database error while handling request")
        raise PersistenceFailure("Database error") from exc
    finally:
        session.close()


__all__ = ["get_session_factory", "service_context", "set_session_factory"]
