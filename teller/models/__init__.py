"""
Database models for the teller.

Queue entries, provisioned accounts, their transaction log, referral
payouts, the points leaderboard and the agent heartbeat.
"""

from .base import Base, BaseModel, TimestampMixin
from .queue import QueueEntry, QueueTier, QueueStatus, ACCOUNT_TIERS
from .account import Account, TransactionRecord, TransactionType
from .referral import ReferralPayout, LeaderboardEntry
from .health import AgentHealth, AgentStatus

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "QueueEntry",
    "QueueTier",
    "QueueStatus",
    "ACCOUNT_TIERS",
    "Account",
    "TransactionRecord",
    "TransactionType",
    "ReferralPayout",
    "LeaderboardEntry",
    "AgentHealth",
    "AgentStatus",
]
