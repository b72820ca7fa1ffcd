"""
Declarative base and shared mixins for all teller models.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class BaseModel(Base):
    """Abstract base for every table."""

    __abstract__ = True

    def to_dict(self) -> Dict[str, Any]:
        """Column values keyed by attribute name."""
        return {column.key: getattr(self, column.key) for column in self.__table__.columns}


class TimestampMixin:
    """Creation and modification timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        comment="Row creation time"
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        comment="Row modification time"
    )
