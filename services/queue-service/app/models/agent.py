import uuid
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, JSON
from app.core.db import Base


class AgentStatus:
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class Agent(Base):
    __tablename__ = "agents"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default=AgentStatus.AVAILABLE, index=True)
    efficiency = Column(Integer, nullable=False, default=0)
    total_served = Column(Integer, nullable=False, default=0)
    # Informational only; not used for routing
    skills = Column(JSON, nullable=False, default=list)
    current_ticket = Column(String(20), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
