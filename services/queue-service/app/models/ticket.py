from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, Index, text
from app.core.db import Base

ACTIVE_STATUS_CLAUSE = "status IN ('waiting', 'in_progress')"


class Ticket(Base):
    __tablename__ = "tickets"

    id = Column(Integer, primary_key=True, index=True)
    phone = Column(String(20), nullable=False, index=True)
    customer_name = Column(String(255), nullable=False, default="Guest Customer")
    service_type = Column(String(100), nullable=False, default="General Service", index=True)
    ticket_number = Column(String(20), nullable=True, unique=True, index=True)
    status = Column(String(20), nullable=False, default="waiting", index=True)
    # Display only; dispatch order is FIFO by created_at
    priority = Column(String(20), nullable=False, default="normal")
    kiosk_id = Column(String(64), nullable=True)
    agent_id = Column(String(64), nullable=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    called_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        # At most one active ticket per phone and service type.
        Index(
            "uq_tickets_active_phone_service",
            "phone",
            "service_type",
            unique=True,
            sqlite_where=text(ACTIVE_STATUS_CLAUSE),
            postgresql_where=text(ACTIVE_STATUS_CLAUSE),
        ),
        Index("ix_tickets_partition_order", "service_type", "status", "created_at", "id"),
    )


class TicketEvent(Base):
    """
    Immutable audit records of ticket lifecycle transitions.
    """
    __tablename__ = "ticket_events"

    id = Column(Integer, primary_key=True, index=True)
    ticket_id = Column(Integer, ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    actor = Column(String(255), nullable=False)
    action = Column(String(50), nullable=False)
    previous_status = Column(String(20), nullable=True)
    new_status = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow, index=True)
