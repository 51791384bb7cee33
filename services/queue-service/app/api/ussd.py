import logging
from typing import List, Optional
from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session
from app.api.deps import get_dispatcher, get_queue_engine, get_ussd_machine
from app.core.db import get_db
from app.core.security import log_security_event
from app.models.ticket import Ticket
from app.schemas.agent import AgentCreate, AgentResponse
from app.schemas.ticket import CallNextRequest, CallNextResponse, QueueTicketResponse, UssdRequest
from app.services.agents import AgentRegistry
from app.services.notifications import NotificationDispatcher, dispatch_notifications
from app.services.queue_engine import QueueEngine
from app.services.ussd import UssdStateMachine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ussd", tags=["USSD"])


async def parse_ussd_request(request: Request) -> UssdRequest:
    # Africa's Talking posts form data; JSON is accepted for testing tools
    try:
        if request.headers.get("content-type", "").startswith("application/json"):
            payload = await request.json()
        else:
            payload = dict(await request.form())
        return UssdRequest.model_validate(payload if isinstance(payload, dict) else {})
    except ValueError as exc:
        # JSON decode and pydantic validation errors; the machine answers an empty request with END
        log_security_event("ussd_malformed_request", None, error=type(exc).__name__)
        return UssdRequest()


@router.post("/callback", response_class=PlainTextResponse)
def ussd_callback(
    background_tasks: BackgroundTasks,
    body: UssdRequest = Depends(parse_ussd_request),
    machine: UssdStateMachine = Depends(get_ussd_machine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Gateway callback. Always answers 200 with a plain-text CON/END screen;
    failures are reported to the user as a terminal message.
    """
    response = machine.handle(body.phone_number, body.text, body.session_id)
    if response.notifications:
        background_tasks.add_task(dispatch_notifications, dispatcher, list(response.notifications))
    return PlainTextResponse(response.render())


def _ticket_payload(ticket: Optional[Ticket], position: Optional[int] = None) -> Optional[QueueTicketResponse]:
    if ticket is None:
        return None
    payload = QueueTicketResponse.model_validate(ticket)
    payload.position = position
    return payload


@router.post("/call-next", response_model=CallNextResponse)
def call_next(request: CallNextRequest, engine: QueueEngine = Depends(get_queue_engine)):
    """
    Complete the agent's current ticket and start the next waiting one.
    """
    result = engine.call_next(request.agent_id, request.service_type)
    return CallNextResponse(
        current_ticket=_ticket_payload(result.completed_ticket),
        next_ticket=_ticket_payload(result.called_ticket, result.called_position),
        message=result.message,
    )


@router.get("/agents", response_model=List[AgentResponse])
def get_agents(db: Session = Depends(get_db)):
    agents = AgentRegistry(db).list()
    logger.debug("Returned %s agents", len(agents))
    return agents


@router.post("/agents", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
def create_agent(agent_in: AgentCreate, db: Session = Depends(get_db)):
    """
    Provision an agent. Agents are normally seeded by an administrator.
    """
    try:
        agent = AgentRegistry(db).register(
            agent_in.name,
            skills=agent_in.skills,
            efficiency=agent_in.efficiency,
            agent_id=agent_in.id,
        )
        db.commit()
        db.refresh(agent)
        return agent
    except Exception as e:
        db.rollback()
        raise e
