from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import Field
from app.schemas.ticket import CamelModel


class AgentStatusEnum(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class AgentCreate(CamelModel):
    id: Optional[str] = Field(None, description="Agent ID; generated when omitted.")
    name: str = Field(..., min_length=1)
    skills: List[str] = Field(default_factory=list, description="Informational; not used for routing.")
    efficiency: int = Field(0, ge=0, le=100)


class AgentResponse(CamelModel):
    id: str
    name: str
    status: AgentStatusEnum
    efficiency: int
    total_served: int
    skills: List[str] = []
    current_ticket: Optional[str] = None
    created_at: Optional[datetime] = None
