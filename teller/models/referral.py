"""
Referral payouts and the points leaderboard.
"""

from decimal import Decimal

from sqlalchemy import String, Integer, BigInteger, Boolean, DECIMAL, Index
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


class ReferralPayout(BaseModel, TimestampMixin):
    """Reward owed to a referrer for one referred account."""

    __tablename__ = "referral_payouts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    referrer_id: Mapped[str] = mapped_column(
        String(64),
        comment="Agent id of the referrer"
    )

    referred_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        comment="Agent id of the referred account"
    )

    referred_tier: Mapped[str] = mapped_column(
        String(20),
        comment="Tier of the referred account"
    )

    usdc_amount: Mapped[Decimal] = mapped_column(
        DECIMAL(18, 6),
        comment="USDC owed to the referrer"
    )

    points_amount: Mapped[int] = mapped_column(
        Integer,
        comment="Leaderboard points awarded"
    )

    points_paid: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Points credited to the leaderboard"
    )

    usdc_paid: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="USDC disbursed"
    )

    __table_args__ = (
        Index("idx_referral_payouts_referrer", "referrer_id", "usdc_paid"),
    )

    def __repr__(self) -> str:
        return f"<ReferralPayout(referrer={self.referrer_id}, referred={self.referred_id})>"


class LeaderboardEntry(BaseModel, TimestampMixin):
    """Accumulated points per agent."""

    __tablename__ = "leaderboard"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    agent_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        comment="Agent id"
    )

    total_points: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        comment="Points accumulated"
    )

    __table_args__ = (
        Index("idx_leaderboard_points", "total_points"),
    )

    def __repr__(self) -> str:
        return f"<LeaderboardEntry(agent={self.agent_id}, points={self.total_points})>"
