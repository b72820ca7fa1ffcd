"""
Queue model - one unit of provisioning work per observed payment.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import String, Integer, DECIMAL, Text, Index, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class QueueTier(str, Enum):
    """Service level of a queue entry."""
    REGULAR = "regular"
    PREMIUM = "premium"
    VIP = "vip"
    GAS_BUNDLE = "gas_bundle"

    @property
    def priority(self) -> int:
        """Rank used for queue ordering; higher is served sooner."""
        return TIER_PRIORITY[self]

    @property
    def opens_account(self) -> bool:
        return self is not QueueTier.GAS_BUNDLE

    @property
    def includes_perks(self) -> bool:
        """Premium and vip accounts get the NFT and the multi-chain gas bundle."""
        return self in (QueueTier.PREMIUM, QueueTier.VIP)


TIER_PRIORITY = {
    QueueTier.VIP: 3,
    QueueTier.PREMIUM: 2,
    QueueTier.REGULAR: 1,
    QueueTier.GAS_BUNDLE: 1,
}

ACCOUNT_TIERS = (QueueTier.REGULAR, QueueTier.PREMIUM, QueueTier.VIP)


class QueueStatus(str, Enum):
    """Processing status of a queue entry."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.COMPLETED, QueueStatus.FAILED)


class QueueEntry(BaseModel, TimestampMixin):
    """A paid request waiting for, or done with, provisioning."""

    __tablename__ = "queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    payment_ref: Mapped[str] = mapped_column(
        String(100),
        unique=True,
        comment="External payment identifier (transaction hash)"
    )

    agent_id: Mapped[str] = mapped_column(
        String(64),
        index=True,
        comment="Agent the work is for"
    )

    tier: Mapped[str] = mapped_column(
        String(20),
        comment="regular, premium, vip or gas_bundle"
    )

    priority: Mapped[int] = mapped_column(
        Integer,
        comment="Tier rank at enqueue time, higher is served first"
    )

    amount: Mapped[Decimal] = mapped_column(
        DECIMAL(18, 6),
        comment="Paid amount in USDC"
    )

    position: Mapped[int] = mapped_column(
        Integer,
        comment="Ordering key, lower is served first"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=QueueStatus.PENDING.value,
        comment="pending, processing, completed or failed"
    )

    referral_code: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        comment="Referral code supplied with the request"
    )

    failure_reason: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Why provisioning failed"
    )

    processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the entry reached a terminal state"
    )

    __table_args__ = (
        Index("idx_queue_status_position", "status", "position"),
        Index("idx_queue_status_priority", "status", "priority"),
    )

    def __repr__(self) -> str:
        return (
            f"<QueueEntry(payment_ref={self.payment_ref}, agent={self.agent_id}, "
            f"tier={self.tier}, position={self.position}, status={self.status})>"
        )

    @property
    def queue_tier(self) -> QueueTier:
        return QueueTier(self.tier)

    @property
    def queue_status(self) -> QueueStatus:
        return QueueStatus(self.status)
