"""
Agent heartbeat row consumed by external monitoring.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import String, Integer, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, utcnow


class AgentStatus(str, Enum):
    ONLINE = "online"
    ERROR = "error"
    OFFLINE = "offline"


class AgentHealth(BaseModel, TimestampMixin):
    """Latest reported state of a named agent process."""

    __tablename__ = "agent_health"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    agent_name: Mapped[str] = mapped_column(String(64), unique=True)

    agent_role: Mapped[str] = mapped_column(String(32), default="teller")

    status: Mapped[str] = mapped_column(String(20))

    last_heartbeat: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<AgentHealth(agent={self.agent_name}, status={self.status})>"
