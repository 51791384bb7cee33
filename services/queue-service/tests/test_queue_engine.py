import re
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from app.core.errors import NotFoundError, TransientStoreError, ValidationError
from app.core.fsm import TicketState
from app.models.agent import Agent, AgentStatus
from app.models.ticket import Ticket, TicketEvent
from app.services.queue_engine import QueueEngine

TICKET_RE = re.compile(r"^T\d{6}$")
ADA = "+2348012345678"


@pytest.fixture
def engine(db_session, test_settings):
    return QueueEngine(db_session, test_settings)


def _join_doctors(engine, count=3):
    return [
        engine.join_queue(f"+23480000000{i:02d}", f"Patient {i}", "Doctor")
        for i in range(1, count + 1)
    ]


# ---------------------------------------------------------------------------
# join_queue
# ---------------------------------------------------------------------------
def test_join_empty_queue(engine, db_session):
    result = engine.join_queue(ADA, "Ada", "Bank Teller")

    assert result.position == 1
    assert result.people_ahead == 0
    assert result.wait_time == 2
    assert result.already_in_queue is False
    assert result.new_user is True
    assert TICKET_RE.match(result.ticket.ticket_number)
    assert result.ticket.ticket_number == f"T{result.ticket.id:06d}"
    assert result.ticket.status == TicketState.WAITING

    event = db_session.query(TicketEvent).one()
    assert event.action == "join"


def test_join_returns_notifications_without_sending(engine):
    result = engine.join_queue(ADA, "Ada", "Bank Teller")

    assert len(result.notifications) == 2
    assert all(n.phone == ADA for n in result.notifications)
    assert "Welcome" in result.notifications[0].message
    assert result.ticket.ticket_number in result.notifications[1].message
    assert "Position: 1" in result.notifications[1].message


def test_rejoin_returns_existing_ticket(engine, db_session):
    first = engine.join_queue(ADA, "Ada", "Bank Teller")
    number = first.ticket.ticket_number

    again = engine.join_queue(ADA, "Ada", "Bank Teller")

    assert again.already_in_queue is True
    assert again.ticket.ticket_number == number
    assert again.position == 1
    assert again.notifications == []
    assert db_session.query(Ticket).count() == 1


def test_same_phone_can_join_other_service(engine):
    engine.join_queue(ADA, "Ada", "Bank Teller")
    other = engine.join_queue(ADA, "Ada", "Doctor")

    assert other.already_in_queue is False
    assert other.new_user is False
    assert other.position == 1
    assert len(other.notifications) == 1


def test_three_joins_get_sequential_positions(engine):
    results = _join_doctors(engine)

    assert [r.position for r in results] == [1, 2, 3]
    assert [r.people_ahead for r in results] == [0, 1, 2]
    assert [r.wait_time for r in results] == [2, 4, 6]
    assert len({r.ticket.ticket_number for r in results}) == 3


def test_join_normalizes_phone_and_defaults(engine):
    result = engine.join_queue(" 234 801 234 5678 ", None, None)

    assert result.ticket.phone == ADA
    assert result.ticket.customer_name == "Guest Customer"
    assert result.ticket.service_type == "General Service"


@pytest.mark.parametrize("name", ["", "   "])
def test_join_rejects_blank_name(engine, db_session, name):
    with pytest.raises(ValidationError) as exc:
        engine.join_queue(ADA, name, "Doctor")
    assert exc.value.field == "name"
    assert db_session.query(Ticket).count() == 0


def test_join_strips_name(engine):
    assert engine.join_queue(ADA, "  Ada  ", "Doctor").ticket.customer_name == "Ada"


def test_join_canonicalizes_service_case(engine):
    result = engine.join_queue(ADA, "Ada", "doctor")
    assert result.ticket.service_type == "Doctor"


@pytest.mark.parametrize("phone", ["", "abc", "+12", "+0123456789", None])
def test_join_rejects_invalid_phone_before_writing(engine, db_session, phone):
    with pytest.raises(ValidationError):
        engine.join_queue(phone, "Ada", "Doctor")
    assert db_session.query(Ticket).count() == 0


def test_join_rejects_unknown_service_before_writing(engine, db_session):
    with pytest.raises(ValidationError) as exc:
        engine.join_queue(ADA, "Ada", "Car Wash")
    assert exc.value.field == "serviceType"
    assert db_session.query(Ticket).count() == 0


def test_join_rejects_unknown_priority(engine):
    with pytest.raises(ValidationError):
        engine.join_queue(ADA, "Ada", "Doctor", priority="vip")


def test_concurrent_duplicate_insert_falls_back_to_existing(engine, db_session, monkeypatch):
    winner = engine.join_queue(ADA, "Ada", "Doctor")
    winner_number = winner.ticket.ticket_number

    # Simulate losing the check-then-insert race: the check sees nothing,
    # the insert then hits the active-ticket unique index.
    original = engine._find_active
    calls = {"n": 0}

    def racing_find(phone, service_type):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return original(phone, service_type)

    monkeypatch.setattr(engine, "_find_active", racing_find)

    result = engine.join_queue(ADA, "Ada", "Doctor")

    assert result.already_in_queue is True
    assert result.ticket.ticket_number == winner_number
    active = db_session.query(Ticket).filter(Ticket.status.in_(["waiting", "in_progress"])).count()
    assert active == 1


def test_join_store_failure_is_transient(engine, db_session, monkeypatch):
    def broken_flush(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "flush", broken_flush)

    with pytest.raises(TransientStoreError) as exc:
        engine.join_queue(ADA, "Ada", "Doctor")
    assert exc.value.retryable is True


# ---------------------------------------------------------------------------
# get_queue / get_status / position_for_phone
# ---------------------------------------------------------------------------
def test_get_queue_positions_per_partition(engine):
    engine.join_queue("+2348000000001", "A", "Doctor")
    engine.join_queue("+2348000000002", "B", "Bank Teller")
    engine.join_queue("+2348000000003", "C", "Doctor")

    entries = engine.get_queue()

    assert [(e.ticket.service_type, e.position, e.estimated_wait_time) for e in entries] == [
        ("Bank Teller", 1, 2),
        ("Doctor", 1, 2),
        ("Doctor", 2, 4),
    ]


def test_get_queue_is_idempotent(engine):
    _join_doctors(engine)
    engine.join_queue(ADA, "Ada", "Bank Teller")

    first = [(e.ticket.id, e.position) for e in engine.get_queue()]
    second = [(e.ticket.id, e.position) for e in engine.get_queue()]

    assert first == second


def test_get_status_reports_position_and_now_serving(engine):
    results = _join_doctors(engine)

    status = engine.get_status(results[2].ticket.ticket_number)

    assert status.position == 3
    assert status.wait_time == 6
    assert status.now_serving == results[0].ticket.ticket_number


def test_get_status_rejects_bad_format_without_querying(test_settings):
    db = MagicMock()
    engine = QueueEngine(db, test_settings)

    for value in ("X123456", "t000001", "T00001", "T0000001", ""):
        with pytest.raises(ValidationError):
            engine.get_status(value)

    db.query.assert_not_called()
    db.execute.assert_not_called()


def test_get_status_not_found(engine):
    with pytest.raises(NotFoundError):
        engine.get_status("T999999")


def test_get_status_is_exact_match_only(engine):
    result = engine.join_queue(ADA, "Ada", "Doctor")
    lowered = result.ticket.ticket_number.lower()

    with pytest.raises(ValidationError):
        engine.get_status(lowered)


def test_position_for_phone(engine):
    _join_doctors(engine, 2)
    engine.join_queue(ADA, "Ada", "Doctor")

    ticket, position = engine.position_for_phone("2348012345678")

    assert ticket.phone == ADA
    assert position == 3

    with pytest.raises(NotFoundError):
        engine.position_for_phone("+2348099999999")


# ---------------------------------------------------------------------------
# call_next
# ---------------------------------------------------------------------------
def test_call_next_calls_oldest_ticket(engine, db_session, agent):
    results = _join_doctors(engine)
    first_number = results[0].ticket.ticket_number

    outcome = engine.call_next("A1", "Doctor")

    assert outcome.completed_ticket is None
    assert outcome.called_ticket.ticket_number == first_number
    assert outcome.called_ticket.status == TicketState.IN_PROGRESS
    assert outcome.called_ticket.agent_id == "A1"

    db_session.expire_all()
    a1 = db_session.get(Agent, "A1")
    assert a1.status == AgentStatus.BUSY
    assert a1.current_ticket == first_number
    assert a1.total_served == 1


def test_call_next_twice_completes_previous(engine, db_session, agent):
    results = _join_doctors(engine)
    first_number = results[0].ticket.ticket_number
    second_number = results[1].ticket.ticket_number

    engine.call_next("A1", "Doctor")
    outcome = engine.call_next("A1", "Doctor")

    assert outcome.completed_ticket.ticket_number == first_number
    assert outcome.completed_ticket.status == TicketState.COMPLETED
    assert outcome.called_ticket.ticket_number == second_number
    assert outcome.called_ticket.status == TicketState.IN_PROGRESS

    db_session.expire_all()
    a1 = db_session.get(Agent, "A1")
    assert a1.current_ticket == second_number
    assert a1.total_served == 2

    # Remaining waiting ticket moved to the front
    status = engine.get_status(results[2].ticket.ticket_number)
    assert status.position == 1


def test_call_next_is_fifo_across_services_without_filter(engine, agent):
    doctor = engine.join_queue("+2348000000001", "A", "Doctor")
    engine.join_queue("+2348000000002", "B", "Bank Teller")

    outcome = engine.call_next("A1", "unknown")

    assert outcome.called_ticket.ticket_number == doctor.ticket.ticket_number


def test_call_next_ignores_priority(engine, agent):
    normal = engine.join_queue("+2348000000001", "A", "Doctor", priority="normal")
    engine.join_queue("+2348000000002", "B", "Doctor", priority="urgent")

    outcome = engine.call_next("A1", "Doctor")

    assert outcome.called_ticket.ticket_number == normal.ticket.ticket_number


def test_call_next_filters_by_service(engine, agent):
    engine.join_queue("+2348000000001", "A", "Doctor")
    teller = engine.join_queue("+2348000000002", "B", "Bank Teller")

    outcome = engine.call_next("A1", "Bank Teller")

    assert outcome.called_ticket.ticket_number == teller.ticket.ticket_number


def test_call_next_empty_queue_releases_agent(engine, db_session, agent):
    engine.join_queue(ADA, "Ada", "Doctor")
    held = engine.call_next("A1", "Doctor").called_ticket.ticket_number

    outcome = engine.call_next("A1", "Doctor")

    assert outcome.completed_ticket is None
    assert outcome.called_ticket is None
    assert outcome.message == "No waiting tickets"

    db_session.expire_all()
    a1 = db_session.get(Agent, "A1")
    assert a1.status == AgentStatus.AVAILABLE
    assert a1.current_ticket is None
    # The released ticket does not stay active forever
    released = db_session.query(Ticket).filter_by(ticket_number=held).one()
    assert released.status == TicketState.COMPLETED


def test_call_next_unknown_agent(engine):
    engine.join_queue(ADA, "Ada", "Doctor")
    with pytest.raises(NotFoundError):
        engine.call_next("ghost", "Doctor")


def test_call_next_requires_agent_id(engine):
    with pytest.raises(ValidationError):
        engine.call_next("  ")


def test_call_next_unknown_service_filter(engine, agent):
    with pytest.raises(ValidationError):
        engine.call_next("A1", "Car Wash")


def test_two_agents_never_share_a_ticket(engine, db_session, agent):
    db_session.add(Agent(id="A2", name="Sarah Manager"))
    db_session.commit()
    _join_doctors(engine, 2)

    first = engine.call_next("A1", "Doctor").called_ticket.ticket_number
    second = engine.call_next("A2", "Doctor").called_ticket.ticket_number

    assert first != second


def test_call_next_rolls_back_on_failure(engine, db_session, agent, monkeypatch):
    results = _join_doctors(engine, 2)
    first_number = results[0].ticket.ticket_number
    second_number = results[1].ticket.ticket_number
    engine.call_next("A1", "Doctor")

    def failing_assign(agent, ticket):
        raise OperationalError("UPDATE agents", {}, Exception("connection lost"))

    monkeypatch.setattr(engine.agents, "assign", failing_assign)

    with pytest.raises(TransientStoreError):
        engine.call_next("A1", "Doctor")

    db_session.expire_all()
    held = db_session.query(Ticket).filter_by(ticket_number=first_number).one()
    waiting = db_session.query(Ticket).filter_by(ticket_number=second_number).one()
    a1 = db_session.get(Agent, "A1")
    assert held.status == TicketState.IN_PROGRESS
    assert waiting.status == TicketState.WAITING
    assert a1.current_ticket == first_number
    assert a1.total_served == 1
