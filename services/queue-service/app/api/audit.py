from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from app.core.db import get_db
from app.core.errors import ValidationError
from app.models.ticket import Ticket, TicketEvent
from app.schemas.ticket import TicketEventResponse
from app.services.positions import is_valid_ticket_number

router = APIRouter(prefix="/audit", tags=["Audit"])


@router.get("", response_model=List[TicketEventResponse])
def get_ticket_events(
    ticket_number: Optional[str] = Query(None, alias="ticketNumber"),
    agent_id: Optional[str] = Query(None, alias="agentId"),
    action: Optional[str] = Query(None, description="join, call or complete"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    """
    Lifecycle history of queue tickets, newest first.
    Filter by ticket number to see one customer's journey, or by agent to see
    who an agent called and completed.
    """
    query = db.query(TicketEvent)

    if ticket_number is not None:
        if not is_valid_ticket_number(ticket_number):
            raise ValidationError("Ticket number must look like T000123", field="ticketNumber")
        query = query.join(Ticket, Ticket.id == TicketEvent.ticket_id).filter(Ticket.ticket_number == ticket_number)
    if agent_id is not None:
        query = query.filter(TicketEvent.actor == agent_id)
    if action is not None:
        query = query.filter(TicketEvent.action == action)

    return query.order_by(TicketEvent.timestamp.desc(), TicketEvent.id.desc()).offset(skip).limit(limit).all()
