"""
Heartbeat reporting to the agent_health table.
"""

from typing import Optional, Union

from sqlalchemy import select
import structlog

from teller.core.database import get_async_session
from teller.models.base import utcnow
from teller.models.health import AgentHealth, AgentStatus


logger = structlog.get_logger(__name__)


class HealthReporter:
    """Upserts the heartbeat row for a named agent."""

    def __init__(self, agent_role: str = "teller"):
        self.agent_role = agent_role
        self.logger = logger.bind(service="health_reporter")
        self.last_status: Optional[str] = None

    async def report_status(
        self,
        name: str,
        status: Union[AgentStatus, str],
        error_message: Optional[str] = None
    ) -> bool:
        """Record the agent's status. Returns False if the write failed."""
        status = AgentStatus(status).value

        try:
            async with get_async_session() as db:
                result = await db.execute(
                    select(AgentHealth).where(AgentHealth.agent_name == name)
                )
                health = result.scalar_one_or_none()

                if health is None:
                    health = AgentHealth(agent_name=name, agent_role=self.agent_role)
                    db.add(health)

                health.status = status
                health.error_message = error_message
                health.last_heartbeat = utcnow()
        except Exception as e:
            self.logger.error("Failed to record heartbeat", agent=name, status=status, error=str(e))
            return False

        if status != self.last_status:
            self.logger.info("Agent status changed", agent=name, status=status, error=error_message)
        self.last_status = status
        return True
