from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional
from datetime import datetime
from enum import Enum


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class TicketStatusEnum(str, Enum):
    WAITING = "waiting"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class PriorityEnum(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class JoinQueueRequest(CamelModel):
    phone: str = Field(..., min_length=1, description="Customer phone; normalized to +<digits>.")
    name: str = Field(..., description="Display name of the customer; must not be blank.")
    service_type: Optional[str] = Field(None, description="Queue to join. Defaults to General Service.")
    kiosk_id: Optional[str] = Field(None, description="Originating kiosk, if any.")
    priority: PriorityEnum = Field(PriorityEnum.NORMAL, description="Display badge only; does not affect ordering.")


class JoinQueueResponse(CamelModel):
    id: int
    ticket_number: str
    position: int
    wait_time: int = Field(..., description="Estimated wait in minutes.")
    people_ahead: int
    already_in_queue: bool
    new_user: bool


class QueueTicketResponse(CamelModel):
    id: int
    phone: str
    customer_name: str
    service_type: str
    ticket_number: Optional[str] = None
    status: TicketStatusEnum
    priority: PriorityEnum
    kiosk_id: Optional[str] = None
    agent_id: Optional[str] = None
    created_at: datetime
    called_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    position: Optional[int] = Field(None, description="1-based rank inside the service type, computed at read time.")
    estimated_wait_time: Optional[int] = Field(None, description="Estimated wait in minutes.")


class TicketStatusResponse(CamelModel):
    ticket_number: str
    status: TicketStatusEnum
    position: int
    now_serving: Optional[str] = Field(None, description="Ticket that would be called next in this service type.")
    wait_time: int


class PositionResponse(CamelModel):
    phone: str
    position: int
    ticket_number: Optional[str] = None


class CallNextRequest(CamelModel):
    agent_id: str = Field(..., min_length=1, description="Agent performing the call.")
    service_type: Optional[str] = Field(None, description="Restrict to one service type; omit or 'unknown' for any.")


class CallNextResponse(CamelModel):
    current_ticket: Optional[QueueTicketResponse] = Field(None, description="Ticket completed by this call, if any.")
    next_ticket: Optional[QueueTicketResponse] = Field(None, description="Ticket now in progress, if any.")
    message: str


class TicketEventResponse(CamelModel):
    id: int
    ticket_id: int
    actor: str
    action: str
    previous_status: Optional[TicketStatusEnum] = None
    new_status: TicketStatusEnum
    reason: Optional[str] = None
    timestamp: datetime


class UssdRequest(CamelModel):
    phone_number: Optional[str] = None
    text: Optional[str] = ""
    session_id: Optional[str] = None
    service_code: Optional[str] = None
    network_code: Optional[str] = None
