from datetime import datetime, timezone

from handoff_hub.models import AuditLogEntry, DeliveryLogEntry
from handoff_hub.security.emergency_tokens import issue_token

from conftest import seed_agent


def _add_agent(api, **kwargs) -> int:
    with api.session_factory() as session:
        return seed_agent(session, **kwargs)


def _rows(api, model):
    with api.session_factory() as session:
        return list(session.query(model).order_by(model.id))


def _inbound(api, transport_id="wamid-in-1", **extra):
    body = {
        "sender_contact": "5511988887777",
        "sender_name": "Maria",
        "content": "Oi, quero um orçamento",
        "transport_message_id": transport_id,
    }
    body.update(extra)
    resp = api.client.post("/api/events/inbound", json=body, headers=api.header("operator"))
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_health_and_version(api):
    assert api.client.get("/api/health").json() == {"status": "ok"}
    version = api.client.get("/api/version").json()
    assert set(version) == {"version", "build_date", "commit_sha"}


def test_requests_without_token_are_rejected(api):
    assert api.client.get("/api/conversations/1").status_code == 401
    resp = api.client.get(
        "/api/conversations/1", headers={"Authorization": "Bearer not-a-jwt"}
    )
    assert resp.status_code == 401


def test_seller_cannot_take_control(api):
    agent_id = _add_agent(api)
    convo_id = _inbound(api)["conversation"]["id"]
    resp = api.client.post(
        f"/api/conversations/{convo_id}/take-control",
        json={"expected_status": "bot"},
        headers=api.header("seller", agent_id=agent_id),
    )
    assert resp.status_code == 403


def test_missing_conversation_is_404(api):
    resp = api.client.get("/api/conversations/999", headers=api.header("operator"))
    assert resp.status_code == 404
    assert resp.json()["error"]["kind"] == "ConversationNotFound"


def test_full_handoff_flow(api):
    agent_id = _add_agent(api)
    operator = api.header("operator")

    created = _inbound(api)
    assert created["routed_to"] == "timeline"
    convo_id = created["conversation"]["id"]
    assert created["conversation"]["status"] == "bot"

    resp = api.client.post(
        f"/api/conversations/{convo_id}/take-control",
        json={"expected_status": "bot"},
        headers=operator,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "manual"

    resp = api.client.post(
        f"/api/conversations/{convo_id}/transfer",
        json={"target_agent_id": agent_id, "note": "quer parcelar"},
        headers=operator,
    )
    assert resp.status_code == 200
    assert resp.json()["assigned_agent_id"] == agent_id

    # The transfer notice reaches the seller through the notifier credential.
    notices = [s for s in api.transport.sent if s[1] == "5511999990001"]
    assert len(notices) == 1
    assert notices[0][0] == "notifier-token"
    assert "quer parcelar" in notices[0][2]
    [log] = _rows(api, DeliveryLogEntry)
    assert log.meta["conversation_id"] == convo_id
    assert log.transport_message_id is not None

    seller = api.header("seller", agent_id=agent_id)
    resp = api.client.post(
        f"/api/conversations/{convo_id}/messages",
        json={"content": "Oi Maria, aqui é a Ana"},
        headers=seller,
    )
    assert resp.status_code == 201, resp.text
    assert resp.json()["status"] == "sent"
    assert api.transport.sent[-1] == ("agent-token", "5511988887777", "Oi Maria, aqui é a Ana")

    detail = api.client.get(f"/api/conversations/{convo_id}", headers=seller).json()
    assert [m["sender_type"] for m in detail["messages"]] == ["client", "seller"]
    assert [n["kind"] for n in detail["notices"]] == ["control_taken", "transferred"]

    resp = api.client.post(f"/api/conversations/{convo_id}/close", headers=operator)
    assert resp.status_code == 200
    assert resp.json()["status"] == "closed"
    assert len([s for s in api.transport.sent if s[1] == "5511999990001"]) == 2


def test_stale_take_control_returns_conflict(api):
    convo_id = _inbound(api)["conversation"]["id"]
    first = api.client.post(
        f"/api/conversations/{convo_id}/take-control",
        json={"expected_status": "bot"},
        headers=api.header("operator"),
    )
    assert first.status_code == 200
    resp = api.client.post(
        f"/api/conversations/{convo_id}/close", headers=api.header("admin")
    )
    assert resp.status_code == 200

    stale = api.client.post(
        f"/api/conversations/{convo_id}/take-control",
        json={"expected_status": "manual"},
        headers=api.header("operator", subject="late@handoff.example"),
    )
    assert stale.status_code == 409
    assert stale.json()["error"]["kind"] == "InvalidTransition"


def test_sending_without_control_is_forbidden(api):
    convo_id = _inbound(api)["conversation"]["id"]
    resp = api.client.post(
        f"/api/conversations/{convo_id}/messages",
        json={"content": "Olá"},
        headers=api.header("operator"),
    )
    assert resp.status_code == 403
    assert resp.json()["error"]["kind"] == "ControlRequired"
    assert api.transport.sent == []


def test_transport_failure_keeps_failed_message(api):
    operator = api.header("operator")
    convo_id = _inbound(api)["conversation"]["id"]
    api.client.post(
        f"/api/conversations/{convo_id}/take-control",
        json={"expected_status": "bot"},
        headers=operator,
    )
    api.transport.fail_all = True
    resp = api.client.post(
        f"/api/conversations/{convo_id}/messages", json={"content": "Olá"}, headers=operator
    )
    assert resp.status_code == 502
    assert resp.json()["error"]["kind"] == "TransportFailure"

    messages = api.client.get(
        f"/api/conversations/{convo_id}/messages", headers=operator
    ).json()
    assert [m["status"] for m in messages] == ["received", "failed"]


def test_agent_channel_event_is_reconciled_in_background(api):
    agent_id = _add_agent(api)
    operator = api.header("operator")
    convo_id = _inbound(api)["conversation"]["id"]
    api.client.post(
        f"/api/conversations/{convo_id}/take-control",
        json={"expected_status": "bot"},
        headers=operator,
    )
    api.client.post(
        f"/api/conversations/{convo_id}/transfer",
        json={"target_agent_id": agent_id},
        headers=operator,
    )

    result = _inbound(
        api,
        transport_id="wamid-agent-1",
        content="Te mando o catálogo",
        agent_id=agent_id,
        from_agent=True,
    )
    assert result["routed_to"] == "agent_channel"
    assert result["channel_entry"]["conversation_id"] == convo_id

    messages = api.client.get(
        f"/api/conversations/{convo_id}/messages", headers=operator
    ).json()
    [synced] = [m for m in messages if m["transport_message_id"] == "wamid-agent-1"]
    assert synced["sender_type"] == "seller"
    assert synced["sender_name"] == "Ana Souza"
    assert synced["metadata"]["source"] == "agent_channel"

    stats = api.client.get("/api/reconciliation/stats", headers=operator).json()
    assert stats == {"channel_entries": 1, "synced_entries": 1, "pending_entries": 0}
    run = api.client.post("/api/reconciliation/run", headers=operator).json()
    assert (run["scanned"], run["synced"], run["skipped"]) == (1, 0, 1)


def test_agent_channel_event_without_transport_id_is_rejected(api):
    agent_id = _add_agent(api)
    resp = api.client.post(
        "/api/events/inbound",
        json={"sender_contact": "5511988887777", "content": "oi", "agent_id": agent_id},
        headers=api.header("operator"),
    )
    assert resp.status_code == 422
    assert resp.json()["error"]["kind"] == "InvalidEvent"


def test_notification_and_resend(api):
    operator = api.header("operator")
    api.transport.fail_all = True
    resp = api.client.post(
        "/api/delivery/notifications",
        json={"recipient": "+55 11 99999-0002", "content": "Novo lead"},
        headers=operator,
    )
    assert resp.status_code == 502

    api.transport.fail_all = False
    summary = api.client.post("/api/delivery/resend", headers=operator).json()
    assert summary["total_processed"] == 1
    assert summary["results"][0]["status"] == "success"
    contexts = [row.context_type for row in _rows(api, DeliveryLogEntry)]
    assert contexts == ["notification", "resend_notification", "resend_summary"]

    again = api.client.post(
        "/api/delivery/resend", json={"lookback_hours": 2}, headers=operator
    ).json()
    assert again["total_processed"] == 0


def test_emergency_token_validation(api):
    valid = api.client.post(
        "/api/security/emergency-token/validate",
        json={"token": issue_token(datetime.now(timezone.utc).date())},
    )
    assert valid.status_code == 200
    assert valid.json()["valid"] is True

    invalid = api.client.post(
        "/api/security/emergency-token/validate", json={"token": "EMG-20000101-AAAA-SECURE"}
    )
    assert invalid.status_code == 200
    assert invalid.json()["valid"] is False

    for body in ({}, {"token": 42}, {"token": ""}):
        resp = api.client.post("/api/security/emergency-token/validate", json=body)
        assert resp.status_code == 400
        assert resp.json() == {"valid": False, "error": "Invalid token format"}

    audit = _rows(api, AuditLogEntry)
    assert [row.details["valid"] for row in audit] == [True, False]
    assert all(row.details["token_prefix"].endswith("...") for row in audit)


def test_login_gate_blocks_after_reported_failures(api):
    operator = api.header("operator")
    for _ in range(5):
        resp = api.client.post(
            "/api/security/events",
            json={
                "event_type": "login_failed",
                "message": "wrong password",
                "identity": "ana@example.com",
            },
            headers={**operator, "User-Agent": "console/1.0"},
        )
        assert resp.status_code == 200
        assert resp.json()["success"] is True

    gate = api.client.post("/api/security/login-gate", json={"identity": "ana@example.com"})
    assert gate.status_code == 200
    assert gate.json()["blocked"] is True
    assert gate.json()["attempts"] == 5

    other = api.client.post("/api/security/login-gate", json={"identity": "bia@example.com"})
    assert other.json()["blocked"] is False

    [first, *_] = _rows(api, AuditLogEntry)
    assert first.details["reported_by"] == "operator@handoff.example"
    assert first.details["user_agent"] == "console/1.0"


def test_security_events_require_operator(api):
    resp = api.client.post(
        "/api/security/events", json={"event_type": "login_failed", "message": "x"}
    )
    assert resp.status_code == 401


def test_transfer_targets_are_active_agents_only(api):
    _add_agent(api, name="Bruno", contact_number="5511999990002")
    _add_agent(api, name="Ana Souza")
    _add_agent(api, name="Carla", is_active=False)

    resp = api.client.get("/api/agents", headers=api.header("operator"))
    assert resp.status_code == 200
    agents = resp.json()
    assert [a["name"] for a in agents] == ["Ana Souza", "Bruno"]
    assert all("transport_token" not in a for a in agents)
    assert agents[0]["has_transport_token"] is True

    seller = api.header("seller", agent_id=1)
    assert api.client.get("/api/agents", headers=seller).status_code == 403
