from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session
from app.core.errors import InvalidTransitionError
from app.models.ticket import Ticket, TicketEvent


class TicketState:
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


ACTIVE_STATES = (TicketState.WAITING, TicketState.IN_PROGRESS)

VALID_TRANSITIONS = {
    TicketState.WAITING: [TicketState.IN_PROGRESS],
    TicketState.IN_PROGRESS: [TicketState.COMPLETED],
    TicketState.COMPLETED: [],
}


class TicketStateMachine:
    def __init__(self, db: Session):
        self.db = db

    def validate_transition(self, current_state: str, new_state: str):
        if new_state not in VALID_TRANSITIONS.get(current_state, []):
            raise InvalidTransitionError(current_state, new_state)

    def record_creation(self, ticket: Ticket, actor: str = "system", reason: Optional[str] = None) -> TicketEvent:
        """Log the initial 'join' event. The ticket must already be flushed."""
        event = TicketEvent(
            ticket_id=ticket.id,
            actor=actor,
            action="join",
            previous_status=None,
            new_status=ticket.status,
            reason=reason or f"Joined {ticket.service_type} queue",
        )
        self.db.add(event)
        return event

    def transition(self, ticket: Ticket, new_state: str, actor: str, action: str, reason: Optional[str] = None) -> Ticket:
        """
        Move a ticket to a new status and record the event within the session.
        Does NOT commit. The caller owns the transaction.
        """
        self.validate_transition(ticket.status, new_state)

        previous_state = ticket.status
        ticket.status = new_state

        timestamp = datetime.utcnow()
        if new_state == TicketState.IN_PROGRESS:
            ticket.called_at = timestamp
        elif new_state == TicketState.COMPLETED:
            ticket.completed_at = timestamp

        self.db.add(TicketEvent(
            ticket_id=ticket.id,
            actor=actor,
            action=action,
            previous_status=previous_state,
            new_status=new_state,
            reason=reason,
            timestamp=timestamp,
        ))

        return ticket
