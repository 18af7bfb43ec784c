import threading
from datetime import timedelta

import pytest
import requests

from handoff_hub.agents.repository import InMemorySalesAgentRepository
from handoff_hub.delivery.credentials import CredentialResolver
from handoff_hub.delivery.repository import (
    InMemoryDeliveryLogRepository,
    SqlDeliveryLogRepository,
)
from handoff_hub.delivery.service import (
    NOTIFICATION,
    RESEND_NOTIFICATION,
    RESEND_SUMMARY,
    DeliveryCoordinator,
    normalize_recipient,
)
from handoff_hub.delivery.transport import HttpTransport
from handoff_hub.errors import CredentialMissing, TransportFailure

from conftest import FakeClock, FakeTransport, make_settings


class Harness:
    def __init__(self, repository=None, settings=None) -> None:
        self.repo = repository or InMemoryDeliveryLogRepository()
        self.transport = FakeTransport()
        self.clock = FakeClock()
        self.sleeps = []
        self.delivery = DeliveryCoordinator(
            self.repo,
            self.transport,
            CredentialResolver(settings or make_settings(), InMemorySalesAgentRepository()),
            clock=self.clock,
            sleep=self.sleeps.append,
            pacing_seconds=1.0,
        )

    def failed_notification(self, recipient="5511999990001", content="Você tem um novo lead"):
        self.transport.failing_recipients.add(recipient)
        with pytest.raises(TransportFailure):
            self.delivery.send(recipient, content, metadata={"conversation_id": 42})
        self.transport.failing_recipients.discard(recipient)


@pytest.fixture
def hub() -> Harness:
    return Harness()


def test_normalize_recipient_keeps_digits():
    assert normalize_recipient("+55 (11) 99999-0001") == "5511999990001"
    assert normalize_recipient("") == ""


def test_send_logs_acknowledged_delivery(hub):
    result = hub.delivery.send("+55 11 99999-0001", "Olá", metadata={"conversation_id": 7})
    assert result.status == "sent"
    assert result.transport_message_id == "wamid-1"
    [entry] = hub.repo.entries
    assert entry.recipient == "5511999990001"
    assert entry.transport_message_id == "wamid-1"
    assert entry.context_type == NOTIFICATION
    assert entry.metadata == {"conversation_id": 7}
    assert hub.transport.sent == [("notifier-token", "5511999990001", "Olá")]


def test_failed_send_is_logged_without_transport_id(hub):
    hub.transport.fail_all = True
    with pytest.raises(TransportFailure) as excinfo:
        hub.delivery.send("5511999990001", "Olá")
    [entry] = hub.repo.entries
    assert entry.status == "failed"
    assert entry.transport_message_id is None
    assert entry.metadata["error"] == "gateway timeout"
    assert excinfo.value.details["log_id"] == entry.id


def test_recipient_without_digits_fails(hub):
    with pytest.raises(TransportFailure):
        hub.delivery.send("n/a", "Olá")
    assert hub.transport.sent == []
    assert hub.repo.entries[0].transport_message_id is None


def test_missing_credential_writes_nothing():
    hub = Harness(settings=make_settings(notifier_transport_token=None))
    with pytest.raises(CredentialMissing):
        hub.delivery.send("5511999990001", "Olá")
    assert hub.repo.entries == []
    assert hub.transport.sent == []


def test_resend_redrives_unacknowledged_notifications(hub):
    hub.failed_notification()
    hub.clock.advance(minutes=10)

    summary = hub.delivery.resend_failed()
    assert (summary.total_processed, summary.success_count, summary.failed_count) == (1, 1, 0)
    [item] = summary.results
    assert item.status == "success"
    assert item.original_log_id == 1

    resend = hub.repo.get_entry(item.log_id)
    assert resend.context_type == RESEND_NOTIFICATION
    assert resend.resend_of_id == 1
    assert resend.content == "Você tem um novo lead"
    assert resend.metadata["original_log_id"] == 1
    assert resend.metadata["resend_reason"] == "missing_transport_message_id"
    assert resend.metadata["conversation_id"] == 42
    assert "error" not in resend.metadata

    report = hub.repo.get_entry(summary.summary_log_id)
    assert report.context_type == RESEND_SUMMARY
    assert report.recipient == "admin"
    assert report.status == "completed"
    assert report.metadata["success_count"] == 1


def test_acknowledged_resend_is_not_repeated(hub):
    hub.failed_notification()
    hub.delivery.resend_failed()
    second = hub.delivery.resend_failed()
    assert second.total_processed == 0
    assert len(hub.transport.sent) == 2


def test_failed_resend_is_retried_on_next_run(hub):
    hub.failed_notification()
    hub.transport.fail_all = True
    first = hub.delivery.resend_failed()
    assert first.results[0].status == "failed"
    assert first.failed_count == 1

    hub.transport.fail_all = False
    second = hub.delivery.resend_failed()
    assert second.results[0].status == "success"
    assert second.results[0].original_log_id == first.results[0].original_log_id


def test_each_run_attempts_each_entry_once(hub):
    hub.failed_notification("5511999990001")
    hub.failed_notification("5511999990002")
    sent_before = len(hub.transport.sent)
    hub.transport.fail_all = True
    summary = hub.delivery.resend_failed()
    assert summary.total_processed == 2
    assert len(hub.transport.sent) - sent_before == 2


def test_resend_respects_lookback(hub):
    hub.failed_notification("5511999990001")
    hub.clock.advance(hours=25)
    hub.failed_notification("5511999990002")
    summary = hub.delivery.resend_failed(lookback=timedelta(hours=24))
    assert [r.recipient for r in summary.results] == ["5511999990002"]


def test_resend_paces_between_sends(hub):
    for n in range(3):
        hub.failed_notification(f"551199999000{n}")
    hub.delivery.resend_failed()
    assert hub.sleeps == [1.0, 1.0]


def test_unexpected_error_is_reported_and_batch_continues(hub, monkeypatch):
    hub.failed_notification("5511999990001")
    hub.failed_notification("5511999990002")
    original = hub.transport.send_text

    def flaky(credential, recipient, content):
        if recipient == "5511999990001":
            raise RuntimeError("socket closed")
        return original(credential, recipient, content)

    monkeypatch.setattr(hub.transport, "send_text", flaky)
    summary = hub.delivery.resend_failed()
    assert [r.status for r in summary.results] == ["critical_error", "success"]
    assert summary.failed_count == 1
    assert summary.results[0].error == "socket closed"


def test_cancel_stops_resend(hub):
    hub.failed_notification()
    cancel = threading.Event()
    cancel.set()
    summary = hub.delivery.resend_failed(cancel_event=cancel)
    assert summary.cancelled is True
    assert summary.total_processed == 0


def test_resend_against_database(session):
    hub = Harness(repository=SqlDeliveryLogRepository(session))
    hub.failed_notification("5511999990001")
    hub.clock.advance(hours=30)
    hub.failed_notification("5511999990002")
    hub.clock.advance(minutes=1)

    summary = hub.delivery.resend_failed()
    assert [r.recipient for r in summary.results] == ["5511999990002"]
    assert hub.delivery.resend_failed().total_processed == 0


class _Response:
    def __init__(self, status_code=200, payload=None, body_is_json=True):
        self.status_code = status_code
        self.ok = status_code < 400
        self._payload = payload
        self._body_is_json = body_is_json

    def json(self):
        if not self._body_is_json:
            raise ValueError("not json")
        return self._payload


class _Session:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.error:
            raise self.error
        return self.response


def test_http_transport_posts_and_returns_id():
    session = _Session(_Response(payload={"message": {"id": "wamid-77"}}))
    transport = HttpTransport("https://gateway.example/api", session=session)
    assert transport.send_text("tok", "5511", "Oi") == "wamid-77"
    url, kwargs = session.calls[0]
    assert url == "https://gateway.example/api/messages/text"
    assert kwargs["json"] == {"to": "5511", "body": "Oi"}
    assert kwargs["headers"]["Authorization"] == "Bearer tok"


@pytest.mark.parametrize(
    "session",
    [
        _Session(_Response(payload={"status": "queued"})),
        _Session(_Response(status_code=500, payload={"id": "x"})),
        _Session(_Response(body_is_json=False)),
        _Session(error=requests.ConnectionError("refused")),
    ],
)
def test_http_transport_without_acknowledgement_fails(session):
    transport = HttpTransport("https://gateway.example", session=session)
    with pytest.raises(TransportFailure):
        transport.send_text("tok", "5511", "Oi")


def test_http_transport_requires_base_url():
    with pytest.raises(TransportFailure):
        HttpTransport(None, session=_Session()).send_text("tok", "5511", "Oi")
