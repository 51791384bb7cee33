import logging
from typing import List
from fastapi import APIRouter, BackgroundTasks, Depends, status
from app.api.deps import get_dispatcher, get_queue_engine
from app.core.phone import mask_phone
from app.schemas.ticket import (
    JoinQueueRequest,
    JoinQueueResponse,
    PositionResponse,
    QueueTicketResponse,
    TicketStatusResponse,
)
from app.services.notifications import NotificationDispatcher, dispatch_notifications
from app.services.queue_engine import QueueEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/queue", tags=["Queue"])


@router.post("/join", response_model=JoinQueueResponse, status_code=status.HTTP_200_OK)
def join_queue(
    request: JoinQueueRequest,
    background_tasks: BackgroundTasks,
    engine: QueueEngine = Depends(get_queue_engine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """
    Join a service queue from the kiosk or web front end.
    Re-joining while an active ticket exists for the same phone and service
    returns that ticket with alreadyInQueue set instead of creating a new one.
    Confirmation messages are sent after the ticket has been committed.
    """
    logger.debug("joinQueue request: phone=%s, service=%s", mask_phone(request.phone), request.service_type)

    result = engine.join_queue(
        request.phone,
        request.name,
        request.service_type,
        kiosk_id=request.kiosk_id,
        priority=request.priority.value,
    )
    if result.notifications:
        background_tasks.add_task(dispatch_notifications, dispatcher, result.notifications)

    return JoinQueueResponse(
        id=result.ticket.id,
        ticket_number=result.ticket.ticket_number,
        position=result.position,
        wait_time=result.wait_time,
        people_ahead=result.people_ahead,
        already_in_queue=result.already_in_queue,
        new_user=result.new_user,
    )


@router.get("", response_model=List[QueueTicketResponse])
def get_queue(engine: QueueEngine = Depends(get_queue_engine)):
    """
    Every waiting ticket across all service types, ordered by service type
    then arrival, with its position inside its own service type.
    """
    entries = engine.get_queue()
    logger.debug("Queue fetched: %s tickets", len(entries))

    response = []
    for entry in entries:
        item = QueueTicketResponse.model_validate(entry.ticket)
        item.position = entry.position
        item.estimated_wait_time = entry.estimated_wait_time
        response.append(item)
    return response


@router.get("/position/{phone}", response_model=PositionResponse)
def get_position(phone: str, engine: QueueEngine = Depends(get_queue_engine)):
    ticket, position = engine.position_for_phone(phone)
    return PositionResponse(phone=ticket.phone, position=position, ticket_number=ticket.ticket_number)


@router.get("/status/{ticket_number}", response_model=TicketStatusResponse)
def get_status(ticket_number: str, engine: QueueEngine = Depends(get_queue_engine)):
    result = engine.get_status(ticket_number)
    return TicketStatusResponse(
        ticket_number=result.ticket.ticket_number,
        status=result.ticket.status,
        position=result.position,
        now_serving=result.now_serving,
        wait_time=result.wait_time,
    )
