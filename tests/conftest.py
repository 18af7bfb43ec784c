import itertools
import pathlib
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI, Request
from sqlalchemy.orm import Session, sessionmaker
from starlette.testclient import TestClient

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from handoff_hub.agents.repository import SqlSalesAgentRepository
from handoff_hub.agents.schemas import SalesAgentCreate
from handoff_hub.app_logging import init_logging
from handoff_hub.config import Settings, reset_settings_cache
from handoff_hub.core import db as core_db
from handoff_hub.errors import TransportFailure
from handoff_hub.models.schema import apply_migrations
from handoff_hub.models.session import get_engine
from handoff_hub.security.tokens import create_access_token

ACCESS_ENV = {
    "ACCESS_TOKEN_SECRET": "super-secret-key",
    "ACCESS_TOKEN_ISSUER": "auth.handoff",
    "ACCESS_TOKEN_AUDIENCE": "handoff-hub",
    "ACCESS_TOKEN_ALGORITHM": "HS256",
    "BUSINESS_TRANSPORT_TOKEN": "business-token",
    "NOTIFIER_TRANSPORT_TOKEN": "notifier-token",
    "RESEND_PACING_SECONDS": "0",
}

NOW = datetime(2024, 3, 15, 12, 0, tzinfo=timezone.utc)


class FakeTransport:
    """Records sends and hands out sequential transport ids."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.failing_recipients: set[str] = set()
        self.fail_all = False
        self._ids = itertools.count(1)

    def send_text(self, credential: str, recipient: str, content: str) -> str:
        self.sent.append((credential, recipient, content))
        if self.fail_all or recipient in self.failing_recipients:
            raise TransportFailure("gateway timeout")
        return f"wamid-{next(self._ids)}"


class FakeClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def make_settings(**overrides) -> Settings:
    values = {
        "business_transport_token": "business-token",
        "notifier_transport_token": "notifier-token",
        "resend_pacing_seconds": 1.0,
    }
    values.update(overrides)
    return Settings(**values)


def seed_agent(
    session: Session,
    name: str = "Ana Souza",
    contact_number: str | None = "5511999990001",
    transport_token: str | None = "agent-token",
    is_active: bool = True,
) -> int:
    profile = SqlSalesAgentRepository(session).create_agent(
        SalesAgentCreate(
            name=name,
            contact_number=contact_number,
            transport_token=transport_token,
            is_active=is_active,
        )
    )
    session.commit()
    return profile.id


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_factory(tmp_path: pathlib.Path) -> sessionmaker[Session]:
    engine = get_engine(f"sqlite+pysqlite:///{tmp_path / 'hub.db'}")
    apply_migrations(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    yield factory
    engine.dispose()


@pytest.fixture
def session(session_factory: sessionmaker[Session]) -> Session:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key, value in ACCESS_ENV.items():
        monkeypatch.setenv(key, value)
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str, log_request_bodies: bool = False):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        if log_request_bodies:
            monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app


@dataclass
class ApiContext:
    client: TestClient
    session_factory: sessionmaker[Session]
    transport: FakeTransport

    def header(self, role: str, subject: str | None = None, agent_id: int | None = None) -> dict[str, str]:
        token, _ = create_access_token(
            subject or f"{role}@handoff.example",
            role,
            name=role.title(),
            agent_id=agent_id,
        )
        return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def api(monkeypatch, tmp_path, settings_env, session_factory, transport) -> ApiContext:
    monkeypatch.setenv("LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setattr(
        "handoff_hub.services.default_transport", lambda settings=None: transport
    )
    core_db.set_session_factory(session_factory)

    from handoff_hub.core.rate_limits import limiter
    from handoff_hub.main import app

    limiter.reset()
    with TestClient(app) as client:
        yield ApiContext(client=client, session_factory=session_factory, transport=transport)
    core_db.set_session_factory(None)
