"""
Queue engine: ticket creation, position queries and call-next dispatch.

Every public operation is one unit of work on the session it was given. It
either commits with all invariants holding or rolls back completely; store
failures surface as ``TransientStoreError``. Messages for customers are never
sent from here: they are returned on the result objects and delivered by the
caller once the transaction has committed.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings, settings as default_settings
from app.core.errors import NotFoundError, QueueError, TransientStoreError, ValidationError
from app.core.fsm import ACTIVE_STATES, TicketState, TicketStateMachine
from app.core.phone import is_valid_phone, mask_phone, normalize_phone
from app.models.ticket import Ticket
from app.services.agents import AgentRegistry
from app.services.notifications import Notification
from app.services.positions import (
    estimate_wait,
    format_ticket_number,
    is_valid_ticket_number,
    now_serving,
    people_ahead,
    position_of,
    waiting_with_positions,
)

logger = logging.getLogger(__name__)

GUEST_NAME = "Guest Customer"
PRIORITIES = ("low", "normal", "high", "urgent")
# Dashboards send this when no service filter is selected
UNFILTERED_SERVICE = "unknown"


@dataclass
class JoinResult:
    ticket: Ticket
    position: int
    wait_time: int
    people_ahead: int
    already_in_queue: bool
    new_user: bool = False
    notifications: List[Notification] = field(default_factory=list)


@dataclass
class QueueEntry:
    ticket: Ticket
    position: int
    estimated_wait_time: int


@dataclass
class StatusResult:
    ticket: Ticket
    position: int
    now_serving: Optional[str]
    wait_time: int


@dataclass
class CallNextResult:
    completed_ticket: Optional[Ticket]
    called_ticket: Optional[Ticket]
    called_position: Optional[int]
    message: str


class QueueEngine:
    def __init__(self, db: Session, settings: Settings = default_settings):
        self.db = db
        self.settings = settings
        self.fsm = TicketStateMachine(db)
        self.agents = AgentRegistry(db)

    # ------------------------------------------------------------------
    # Input validation
    # ------------------------------------------------------------------
    def validate_phone(self, phone: Optional[str]) -> str:
        normalized = normalize_phone(phone)
        if not is_valid_phone(normalized):
            raise ValidationError("Phone number must be in international format, e.g. +2348012345678", field="phone")
        return normalized

    def resolve_service_type(self, service_type: Optional[str]) -> str:
        if service_type is None or not service_type.strip():
            return self.settings.DEFAULT_SERVICE_TYPE
        wanted = service_type.strip().lower()
        for known in self.settings.SERVICE_TYPES:
            if known.lower() == wanted:
                return known
        raise ValidationError(f"Unknown service type: {service_type}", field="serviceType")

    # ------------------------------------------------------------------
    # Join
    # ------------------------------------------------------------------
    def join_queue(
        self,
        phone: str,
        name: Optional[str] = None,
        service_type: Optional[str] = None,
        kiosk_id: Optional[str] = None,
        priority: str = "normal",
    ) -> JoinResult:
        phone = self.validate_phone(phone)
        service_type = self.resolve_service_type(service_type)
        if priority not in PRIORITIES:
            raise ValidationError(f"Unknown priority: {priority}", field="priority")
        # USSD joins carry no name; kiosk and web joins must supply one
        if name is None:
            customer_name = GUEST_NAME
        else:
            customer_name = name.strip()
            if not customer_name:
                raise ValidationError("Name must not be empty", field="name")

        try:
            existing = self._find_active(phone, service_type)
            if existing is not None:
                result = self._existing_result(existing)
                self.db.commit()
                return result

            new_user = not self._has_history(phone)
            ticket = Ticket(
                phone=phone,
                customer_name=customer_name,
                service_type=service_type,
                status=TicketState.WAITING,
                priority=priority,
                kiosk_id=kiosk_id,
            )
            self.db.add(ticket)
            self.db.flush()

            ticket.ticket_number = format_ticket_number(ticket.id)
            self.fsm.record_creation(ticket, actor=kiosk_id or "customer")
            self.db.flush()

            position = position_of(self.db, ticket)
            self.db.commit()
        except IntegrityError:
            # A concurrent join for the same phone and service won the insert
            self.db.rollback()
            logger.info("Concurrent join for %s in %s, returning existing ticket", mask_phone(phone), service_type)
            return self._existing_after_conflict(phone, service_type)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("join_queue failed for %s: %s", mask_phone(phone), exc)
            raise TransientStoreError("Could not join the queue, please retry") from exc

        wait_time = estimate_wait(position, self.settings.MINUTES_PER_TICKET)
        logger.info(
            "Queue joined - Ticket: %s, Position: %s, Service: %s",
            ticket.ticket_number, position, service_type,
        )

        notifications = []
        if new_user:
            notifications.append(Notification(
                phone,
                f"Hi {customer_name}! Welcome to {self.settings.PROJECT_NAME}. "
                "You'll get updates about your ticket here.",
            ))
        notifications.append(Notification(
            phone,
            f"Queue Ticket Confirmed\n\nTicket: {ticket.ticket_number}\nService: {service_type}\n"
            f"Position: {position}\nWait Time: ~{wait_time} min",
        ))

        return JoinResult(
            ticket=ticket,
            position=position,
            wait_time=wait_time,
            people_ahead=people_ahead(position),
            already_in_queue=False,
            new_user=new_user,
            notifications=notifications,
        )

    def _find_active(self, phone: str, service_type: str) -> Optional[Ticket]:
        return (
            self.db.query(Ticket)
            .filter(
                Ticket.phone == phone,
                Ticket.service_type == service_type,
                Ticket.status.in_(ACTIVE_STATES),
            )
            .first()
        )

    def _has_history(self, phone: str) -> bool:
        return self.db.query(Ticket.id).filter(Ticket.phone == phone).first() is not None

    def _existing_result(self, ticket: Ticket) -> JoinResult:
        position = position_of(self.db, ticket) if ticket.status == TicketState.WAITING else 0
        return JoinResult(
            ticket=ticket,
            position=position,
            wait_time=estimate_wait(position, self.settings.MINUTES_PER_TICKET),
            people_ahead=people_ahead(position),
            already_in_queue=True,
        )

    def _existing_after_conflict(self, phone: str, service_type: str) -> JoinResult:
        try:
            existing = self._find_active(phone, service_type)
            if existing is None:
                raise TransientStoreError("Could not join the queue, please retry")
            result = self._existing_result(existing)
            self.db.commit()
            return result
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise TransientStoreError("Could not join the queue, please retry") from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_queue(self) -> List[QueueEntry]:
        try:
            rows = waiting_with_positions(self.db)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to fetch queue: %s", exc)
            raise TransientStoreError("Failed to fetch queue data") from exc

        return [
            QueueEntry(
                ticket=ticket,
                position=position,
                estimated_wait_time=estimate_wait(position, self.settings.MINUTES_PER_TICKET),
            )
            for ticket, position in rows
        ]

    def get_status(self, ticket_number: str) -> StatusResult:
        if not is_valid_ticket_number(ticket_number):
            raise ValidationError("Ticket number must look like T000123", field="ticketNumber")

        try:
            ticket = self.db.query(Ticket).filter(Ticket.ticket_number == ticket_number).first()
            if ticket is None:
                raise NotFoundError(f"Ticket {ticket_number} not found", field="ticketNumber")

            position = position_of(self.db, ticket) if ticket.status == TicketState.WAITING else 0
            serving = now_serving(self.db, ticket.service_type)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("get_status failed for %s: %s", ticket_number, exc)
            raise TransientStoreError("Failed to look up ticket") from exc

        return StatusResult(
            ticket=ticket,
            position=position,
            now_serving=serving.ticket_number if serving else None,
            wait_time=estimate_wait(position, self.settings.MINUTES_PER_TICKET),
        )

    def position_for_phone(self, phone: str) -> Tuple[Ticket, int]:
        """Earliest waiting ticket held by ``phone`` and its position."""
        phone = self.validate_phone(phone)
        try:
            ticket = (
                self.db.query(Ticket)
                .filter(Ticket.phone == phone, Ticket.status == TicketState.WAITING)
                .order_by(Ticket.created_at, Ticket.id)
                .first()
            )
            if ticket is None:
                raise NotFoundError("Phone number not found in queue", field="phone")
            return ticket, position_of(self.db, ticket)
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise TransientStoreError("Failed to look up queue position") from exc

    # ------------------------------------------------------------------
    # Call next
    # ------------------------------------------------------------------
    def call_next(self, agent_id: str, service_type: Optional[str] = None) -> CallNextResult:
        """
        Complete the agent's current ticket (if any) and start the oldest
        waiting ticket, optionally restricted to one service type.

        All ticket and agent updates are committed together or not at all.
        """
        if not agent_id or not agent_id.strip():
            raise ValidationError("Agent ID is required", field="agentId")
        service_filter = self._dispatch_filter(service_type)

        try:
            agent = self.agents.get_for_update(agent_id.strip())
            candidate = self._next_candidate(service_filter)

            if candidate is None:
                released = self._complete_held_ticket(agent)
                self.agents.release(agent)
                self.db.commit()
                if released is not None:
                    logger.info("Agent %s released %s, queue empty", agent.id, released.ticket_number)
                return CallNextResult(
                    completed_ticket=None,
                    called_ticket=None,
                    called_position=None,
                    message="No waiting tickets",
                )

            completed = self._complete_held_ticket(agent)

            self.fsm.transition(
                candidate,
                TicketState.IN_PROGRESS,
                actor=agent.id,
                action="call",
                reason=f"Called by {agent.name}",
            )
            candidate.agent_id = agent.id
            self.agents.assign(agent, candidate)
            self.db.flush()

            called_position = position_of(self.db, candidate)
            self.db.commit()
        except QueueError:
            self.db.rollback()
            raise
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("call_next failed for agent %s: %s", agent_id, exc)
            raise TransientStoreError("Failed to call next ticket, please retry") from exc

        message = f"Now serving {candidate.ticket_number}"
        if completed is not None:
            message = f"Completed {completed.ticket_number}. {message}"
        logger.info("Agent %s: %s", agent_id, message)

        return CallNextResult(
            completed_ticket=completed,
            called_ticket=candidate,
            called_position=called_position,
            message=message,
        )

    def _dispatch_filter(self, service_type: Optional[str]) -> Optional[str]:
        if service_type is None or not service_type.strip():
            return None
        if service_type.strip().lower() == UNFILTERED_SERVICE:
            return None
        return self.resolve_service_type(service_type)

    def _next_candidate(self, service_type: Optional[str]) -> Optional[Ticket]:
        query = self.db.query(Ticket).filter(Ticket.status == TicketState.WAITING)
        if service_type is not None:
            query = query.filter(Ticket.service_type == service_type)
        return (
            query.order_by(Ticket.created_at, Ticket.id)
            .with_for_update(skip_locked=True)
            .first()
        )

    def _complete_held_ticket(self, agent) -> Optional[Ticket]:
        if not agent.current_ticket:
            return None
        held = (
            self.db.query(Ticket)
            .filter(Ticket.ticket_number == agent.current_ticket)
            .with_for_update()
            .first()
        )
        if held is None or held.status != TicketState.IN_PROGRESS:
            return None
        return self.fsm.transition(
            held,
            TicketState.COMPLETED,
            actor=agent.id,
            action="complete",
            reason=f"Completed by {agent.name}",
        )
