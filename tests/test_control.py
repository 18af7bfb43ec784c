import threading

import pytest

from handoff_hub.agents.repository import InMemorySalesAgentRepository
from handoff_hub.agents.schemas import SalesAgentCreate
from handoff_hub.conversations.control import ConversationControl
from handoff_hub.conversations.models import (
    Actor,
    ActorRole,
    ConversationStatus,
    InboundEvent,
    MessageKind,
    MessageStatus,
    PendingSend,
    SenderType,
)
from handoff_hub.conversations.repository import InMemoryConversationRepository
from handoff_hub.delivery.credentials import CredentialResolver
from handoff_hub.errors import (
    AgentUnavailable,
    ConflictingTransition,
    ControlRequired,
    CredentialMissing,
    InvalidEvent,
    InvalidTransition,
    TransportFailure,
)

from conftest import FakeClock, FakeTransport, make_settings

OPERATOR = Actor(identity="op@handoff.example", role=ActorRole.OPERATOR, display_name="Olga")
SECOND_OPERATOR = Actor(identity="op2@handoff.example", role=ActorRole.OPERATOR, display_name="Otto")


class Harness:
    def __init__(self) -> None:
        self.repo = InMemoryConversationRepository()
        self.agents = InMemorySalesAgentRepository()
        self.transport = FakeTransport()
        self.clock = FakeClock()
        self.events = []
        self.control = ConversationControl(
            self.repo,
            self.agents,
            self.transport,
            CredentialResolver(make_settings(), self.agents),
            dispatcher=self.events.append,
            clock=self.clock,
        )

    def add_agent(self, name="Ana Souza", is_active=True, transport_token="agent-token"):
        return self.agents.create_agent(
            SalesAgentCreate(
                name=name,
                contact_number="5511999990001",
                transport_token=transport_token,
                is_active=is_active,
            )
        )

    def inbound(self, content="Oi, quero um orçamento", transport_id="wamid-in-1", **kwargs):
        return self.control.record_inbound(
            InboundEvent(
                sender_contact="5511988887777",
                content=content,
                transport_message_id=transport_id,
                timestamp=self.clock(),
                **kwargs,
            )
        )

    def new_conversation(self):
        return self.inbound().conversation

    def seller(self, agent_id):
        return Actor(
            identity=f"agent{agent_id}@handoff.example",
            role=ActorRole.SELLER,
            display_name="Ana Souza",
            agent_id=agent_id,
        )


@pytest.fixture
def hub() -> Harness:
    return Harness()


def test_inbound_creates_bot_conversation(hub):
    result = hub.inbound(sender_name="Maria")
    assert result.routed_to == "timeline"
    assert result.duplicate is False
    assert result.conversation.status is ConversationStatus.BOT
    assert result.conversation.customer_name == "Maria"
    assert result.message.sender_type is SenderType.CLIENT
    assert result.message.status is MessageStatus.RECEIVED
    assert hub.events == []


def test_inbound_with_same_transport_id_is_stored_once(hub):
    first = hub.inbound()
    second = hub.inbound(content="retry")
    assert second.duplicate is True
    assert second.message.id == first.message.id
    assert len(hub.repo.list_messages(first.conversation.id)) == 1


def test_inbound_media_without_text_gets_placeholder(hub):
    result = hub.inbound(
        content=None, message_kind=MessageKind.IMAGE, media_url="https://cdn.example/p.jpg"
    )
    assert result.message.content == "[media]"
    assert result.message.metadata["media"] == {
        "url": "https://cdn.example/p.jpg",
        "kind": "image",
    }


def test_take_control_from_bot(hub):
    convo = hub.new_conversation()
    updated = hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    assert updated.status is ConversationStatus.MANUAL
    assert updated.assigned_agent_id is None
    [event] = hub.events
    assert (event.kind, event.from_status, event.to_status) == (
        "control_taken",
        ConversationStatus.BOT,
        ConversationStatus.MANUAL,
    )
    [notice] = hub.repo.list_notices(convo.id)
    assert notice.actor == OPERATOR.identity


def test_take_control_with_stale_expectation_conflicts(hub):
    convo = hub.new_conversation()
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    agent = hub.add_agent()
    hub.control.transfer_to_agent(convo.id, agent.id, OPERATOR)

    with pytest.raises(ConflictingTransition) as excinfo:
        hub.control.take_control(convo.id, ConversationStatus.BOT, SECOND_OPERATOR)
    assert excinfo.value.details["actual"] == "seller"
    assert hub.control.get_conversation(convo.id).assigned_agent_id == agent.id


def test_second_claim_on_manual_conversation_conflicts(hub):
    convo = hub.new_conversation()
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    with pytest.raises(ConflictingTransition) as excinfo:
        hub.control.take_control(convo.id, ConversationStatus.MANUAL, SECOND_OPERATOR)
    assert excinfo.value.details["actual"] == "manual"
    assert len(hub.events) == 1
    [notice] = hub.repo.list_notices(convo.id)
    assert notice.actor == OPERATOR.identity


def test_take_control_of_closed_conversation_is_invalid(hub):
    convo = hub.new_conversation()
    hub.control.close(convo.id, OPERATOR)
    with pytest.raises(InvalidTransition):
        hub.control.take_control(convo.id, ConversationStatus.CLOSED, OPERATOR)


def test_seller_can_be_taken_back_by_operator(hub):
    convo = hub.new_conversation()
    agent = hub.add_agent()
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    hub.control.transfer_to_agent(convo.id, agent.id, OPERATOR)
    back = hub.control.take_control(convo.id, ConversationStatus.SELLER, OPERATOR)
    assert back.status is ConversationStatus.MANUAL
    assert back.assigned_agent_id is None
    assert hub.events[-1].recipient_agent_ids == [agent.id]


def test_transfer_requires_manual(hub):
    convo = hub.new_conversation()
    agent = hub.add_agent()
    with pytest.raises(InvalidTransition):
        hub.control.transfer_to_agent(convo.id, agent.id, OPERATOR)
    assert hub.control.get_conversation(convo.id).status is ConversationStatus.BOT


def test_transfer_to_inactive_or_unknown_agent_is_rejected(hub):
    convo = hub.new_conversation()
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    inactive = hub.add_agent(name="Bia", is_active=False)
    with pytest.raises(AgentUnavailable):
        hub.control.transfer_to_agent(convo.id, inactive.id, OPERATOR)
    with pytest.raises(AgentUnavailable):
        hub.control.transfer_to_agent(convo.id, 999, OPERATOR)
    assert hub.control.get_conversation(convo.id).status is ConversationStatus.MANUAL


def test_transfer_assigns_agent_and_records_note(hub):
    convo = hub.new_conversation()
    agent = hub.add_agent()
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    updated = hub.control.transfer_to_agent(convo.id, agent.id, OPERATOR, note="hot lead")
    assert updated.status is ConversationStatus.SELLER
    assert updated.assigned_agent_id == agent.id
    event = hub.events[-1]
    assert event.kind == "transferred"
    assert event.details == {"agent_name": "Ana Souza", "note": "hot lead"}
    assert event.recipient_agent_ids == [agent.id]


def test_close_is_idempotent(hub):
    convo = hub.new_conversation()
    first = hub.control.close(convo.id, OPERATOR, reason="resolved")
    hub.clock.advance(minutes=5)
    second = hub.control.close(convo.id, SECOND_OPERATOR)
    assert first.status is ConversationStatus.CLOSED
    assert second.closed_at == first.closed_at
    assert [e.kind for e in hub.events] == ["closed"]


def test_closing_seller_conversation_notifies_previous_agent(hub):
    convo = hub.new_conversation()
    agent = hub.add_agent()
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    hub.control.transfer_to_agent(convo.id, agent.id, OPERATOR)
    closed = hub.control.close(convo.id, hub.seller(agent.id))
    assert closed.assigned_agent_id is None
    event = hub.events[-1]
    assert event.previous_agent_id == agent.id
    assert event.details["previous_agent_id"] == agent.id


def test_customer_reply_moves_manual_to_waiting(hub):
    convo = hub.new_conversation()
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    result = hub.inbound(content="still there?", transport_id="wamid-in-2")
    assert result.conversation.id == convo.id
    assert result.conversation.status is ConversationStatus.WAITING
    assert hub.events[-1].kind == "waiting"


def test_customer_reply_leaves_seller_in_place(hub):
    convo = hub.new_conversation()
    agent = hub.add_agent()
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    hub.control.transfer_to_agent(convo.id, agent.id, OPERATOR)
    result = hub.inbound(content="ok", transport_id="wamid-in-2")
    assert result.conversation.status is ConversationStatus.SELLER
    assert result.conversation.assigned_agent_id == agent.id


def test_inbound_after_close_starts_a_new_conversation(hub):
    convo = hub.new_conversation()
    hub.control.close(convo.id, OPERATOR)
    result = hub.inbound(
        content="hello again", transport_id="wamid-in-2", conversation_hint=convo.id
    )
    assert result.conversation.id != convo.id
    assert result.conversation.status is ConversationStatus.BOT
    assert hub.control.get_conversation(convo.id).status is ConversationStatus.CLOSED


def test_agent_channel_event_goes_to_channel_log(hub):
    convo = hub.new_conversation()
    agent = hub.add_agent()
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    hub.control.transfer_to_agent(convo.id, agent.id, OPERATOR)
    result = hub.inbound(
        content="Posso ajudar?", transport_id="wamid-agent-1", agent_id=agent.id, from_agent=True
    )
    assert result.routed_to == "agent_channel"
    assert result.channel_entry.conversation_id == convo.id
    assert len(hub.repo.list_messages(convo.id)) == 1


def test_agent_channel_event_needs_transport_id(hub):
    with pytest.raises(InvalidEvent):
        hub.inbound(transport_id=None, agent_id=1, from_agent=True)


def test_operator_send_requires_control(hub):
    convo = hub.new_conversation()
    with pytest.raises(ControlRequired):
        hub.control.send_message(convo.id, "Olá!", OPERATOR)
    assert hub.transport.sent == []
    assert len(hub.repo.list_messages(convo.id)) == 1


def test_seller_must_be_the_assigned_agent(hub):
    convo = hub.new_conversation()
    agent = hub.add_agent()
    other = hub.add_agent(name="Bruno")
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    hub.control.transfer_to_agent(convo.id, agent.id, OPERATOR)

    with pytest.raises(ControlRequired):
        hub.control.send_message(convo.id, "Oi", hub.seller(other.id))
    with pytest.raises(ControlRequired):
        hub.control.send_message(convo.id, "Oi", OPERATOR)

    message = hub.control.send_message(convo.id, "Oi, sou a Ana", hub.seller(agent.id))
    assert message.sender_type is SenderType.SELLER
    assert hub.transport.sent == [("agent-token", "5511988887777", "Oi, sou a Ana")]


def test_send_settles_pending_message(hub):
    convo = hub.new_conversation()
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    pending = PendingSend(
        conversation_id=convo.id,
        content="Olá!",
        sender_type=SenderType.OPERATOR,
        sender_name="Olga",
    )
    message = hub.control.send_message(convo.id, "Olá!", OPERATOR, pending=pending)
    assert message.status is MessageStatus.SENT
    assert message.transport_message_id == "wamid-1"
    assert message.metadata["temp_id"] == pending.temp_id
    assert pending.state == "settled"
    assert pending.message_id == message.id
    assert hub.transport.sent[0][0] == "business-token"


def test_transport_failure_marks_message_failed(hub):
    convo = hub.new_conversation()
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    hub.transport.fail_all = True
    pending = PendingSend(
        conversation_id=convo.id,
        content="Olá!",
        sender_type=SenderType.OPERATOR,
        sender_name="Olga",
    )
    with pytest.raises(TransportFailure):
        hub.control.send_message(convo.id, "Olá!", OPERATOR, pending=pending)
    assert pending.state == "discarded"
    assert pending.error == "gateway timeout"
    statuses = [m.status for m in hub.repo.list_messages(convo.id)]
    assert statuses == [MessageStatus.RECEIVED, MessageStatus.FAILED]


def test_seller_without_credential_cannot_send(hub):
    convo = hub.new_conversation()
    agent = hub.add_agent(transport_token=None)
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    hub.control.transfer_to_agent(convo.id, agent.id, OPERATOR)
    with pytest.raises(CredentialMissing):
        hub.control.send_message(convo.id, "Oi", hub.seller(agent.id))
    assert hub.transport.sent == []


def test_operator_reply_resumes_waiting_conversation(hub):
    convo = hub.new_conversation()
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    hub.inbound(content="alô?", transport_id="wamid-in-2")
    hub.control.send_message(convo.id, "Estou aqui", SECOND_OPERATOR)
    assert hub.control.get_conversation(convo.id).status is ConversationStatus.MANUAL
    assert hub.events[-1].kind == "control_resumed"


def test_dispatcher_errors_do_not_undo_transition(hub):
    def explode(event):
        raise RuntimeError("notifier down")

    hub.control._dispatcher = explode
    convo = hub.new_conversation()
    updated = hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    assert updated.status is ConversationStatus.MANUAL


def test_concurrent_take_control_has_one_winner(hub):
    convo = hub.new_conversation()
    start = threading.Barrier(8)
    outcomes = []
    lock = threading.Lock()

    def contender(n):
        actor = Actor(identity=f"op{n}", role=ActorRole.OPERATOR, display_name=f"Op {n}")
        start.wait()
        try:
            hub.control.take_control(convo.id, ConversationStatus.BOT, actor)
            outcome = "won"
        except ConflictingTransition:
            outcome = "lost"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=contender, args=(n,)) for n in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    # Losers that read the conversation after the winner committed see
    # ``manual`` with expectation ``bot`` and conflict as well.
    assert outcomes.count("won") == 1
    assert outcomes.count("lost") == 7
    assert len(hub.repo.list_notices(convo.id)) == 1


def test_concurrent_claims_on_held_conversation_all_conflict(hub):
    convo = hub.new_conversation()
    hub.control.take_control(convo.id, ConversationStatus.BOT, OPERATOR)
    start = threading.Barrier(4)
    outcomes = []
    lock = threading.Lock()

    def contender(n):
        actor = Actor(identity=f"op{n}", role=ActorRole.OPERATOR, display_name=f"Op {n}")
        start.wait()
        try:
            hub.control.take_control(convo.id, ConversationStatus.MANUAL, actor)
            outcome = "won"
        except ConflictingTransition:
            outcome = "lost"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=contender, args=(n,)) for n in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes == ["lost"] * 4
    [notice] = hub.repo.list_notices(convo.id)
    assert notice.actor == OPERATOR.identity
