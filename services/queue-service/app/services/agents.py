import logging
from typing import Iterable, List, Optional
from sqlalchemy.orm import Session
from app.core.errors import NotFoundError, ValidationError
from app.models.agent import Agent, AgentStatus
from app.models.ticket import Ticket

logger = logging.getLogger(__name__)


class AgentRegistry:
    """
    Agent lookup and the agent-side half of call-next.
    Mutating methods only touch the session; the caller commits.
    """

    def __init__(self, db: Session):
        self.db = db

    def list(self) -> List[Agent]:
        return self.db.query(Agent).order_by(Agent.created_at, Agent.name).all()

    def get(self, agent_id: str) -> Agent:
        agent = self.db.query(Agent).filter(Agent.id == agent_id).first()
        if not agent:
            raise NotFoundError(f"Agent {agent_id} not found", field="agentId")
        return agent

    def get_for_update(self, agent_id: str) -> Agent:
        agent = self.db.query(Agent).filter(Agent.id == agent_id).with_for_update().first()
        if not agent:
            raise NotFoundError(f"Agent {agent_id} not found", field="agentId")
        return agent

    def register(
        self,
        name: str,
        skills: Optional[Iterable[str]] = None,
        efficiency: int = 0,
        agent_id: Optional[str] = None,
    ) -> Agent:
        if not name or not name.strip():
            raise ValidationError("Agent name is required", field="name")
        if not 0 <= efficiency <= 100:
            raise ValidationError("Efficiency must be between 0 and 100", field="efficiency")

        agent = Agent(
            name=name.strip(),
            skills=list(skills or []),
            efficiency=efficiency,
            status=AgentStatus.AVAILABLE,
        )
        if agent_id:
            agent.id = agent_id
        self.db.add(agent)
        self.db.flush()
        logger.info("Registered agent %s (%s)", agent.id, agent.name)
        return agent

    def assign(self, agent: Agent, ticket: Ticket) -> Agent:
        agent.current_ticket = ticket.ticket_number
        agent.status = AgentStatus.BUSY
        agent.total_served = (agent.total_served or 0) + 1
        return agent

    def release(self, agent: Agent) -> Agent:
        agent.current_ticket = None
        agent.status = AgentStatus.AVAILABLE
        return agent
