"""
Position calculation for tickets inside a service-type partition.

Positions are never stored: completions and new arrivals shift them
continuously, so every read recomputes them from the ticket table. A ticket's
position is the number of waiting tickets in its partition created at or
before it, ordered by (created_at, id).
"""
import re
from typing import List, Optional, Tuple
from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session
from app.core.fsm import TicketState
from app.models.ticket import Ticket

TICKET_NUMBER_PATTERN = re.compile(r"^T\d{6}$")


def format_ticket_number(ticket_id: int) -> str:
    return f"T{ticket_id:06d}"


def is_valid_ticket_number(value: Optional[str]) -> bool:
    return value is not None and TICKET_NUMBER_PATTERN.fullmatch(value) is not None


def people_ahead(position: int) -> int:
    return max(position - 1, 0)


def estimate_wait(position: int, minutes_per_ticket: int) -> int:
    return max(position, 0) * minutes_per_ticket


def position_of(db: Session, ticket: Ticket) -> int:
    return db.query(func.count(Ticket.id)).filter(
        Ticket.service_type == ticket.service_type,
        Ticket.status == TicketState.WAITING,
        or_(
            Ticket.created_at < ticket.created_at,
            and_(Ticket.created_at == ticket.created_at, Ticket.id <= ticket.id),
        ),
    ).scalar() or 0


def waiting_with_positions(db: Session) -> List[Tuple[Ticket, int]]:
    """All waiting tickets ordered by (service_type, created_at, id) with their positions."""
    position = func.row_number().over(
        partition_by=Ticket.service_type,
        order_by=(Ticket.created_at, Ticket.id),
    ).label("position")

    rows = (
        db.query(Ticket, position)
        .filter(Ticket.status == TicketState.WAITING)
        .order_by(Ticket.service_type, Ticket.created_at, Ticket.id)
        .all()
    )
    return [(ticket, int(pos)) for ticket, pos in rows]


def now_serving(db: Session, service_type: str) -> Optional[Ticket]:
    """The ticket a call-next on this partition would pick."""
    return (
        db.query(Ticket)
        .filter(Ticket.service_type == service_type, Ticket.status == TicketState.WAITING)
        .order_by(Ticket.created_at, Ticket.id)
        .first()
    )
