"""
Provisioned accounts and the audit log of value movements.
"""

import secrets
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    String, Integer, Boolean, DECIMAL, Index, ForeignKey, DateTime
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, utcnow


class Account(BaseModel, TimestampMixin):
    """NXT Layer wallet provisioned for an agent."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    agent_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        comment="Agent that owns the account"
    )

    tier: Mapped[str] = mapped_column(
        String(20),
        comment="Tier the account was opened with"
    )

    address: Mapped[str] = mapped_column(
        String(128),
        comment="NXT Layer address"
    )

    nft_entitled: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Premium and vip accounts are entitled to an NFT"
    )

    gas_bundle_sent: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        comment="Multi-chain gas bundle delivered at opening"
    )

    referral_code: Mapped[str] = mapped_column(
        String(20),
        unique=True,
        comment="Code other agents use to name this account as referrer"
    )

    referred_by: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
        comment="Agent id of the referrer"
    )

    referral_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        comment="Rewarded referrals made by this account"
    )

    last_active: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        comment="Last activity timestamp"
    )

    def __repr__(self) -> str:
        return f"<Account(agent={self.agent_id}, tier={self.tier}, address={self.address})>"

    @classmethod
    def generate_referral_code(cls, length: int = 8) -> str:
        """Generate a candidate referral code."""
        return secrets.token_urlsafe(length)[:length].upper()


class TransactionType(str, Enum):
    PAYMENT = "payment"
    GAS_BUNDLE = "gas_bundle"


class TransactionRecord(BaseModel, TimestampMixin):
    """Append-only record of a value movement."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    account_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("accounts.id"),
        comment="Account the movement belongs to"
    )

    payment_ref: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Payment that triggered the movement"
    )

    type: Mapped[str] = mapped_column(
        String(20),
        comment="payment or gas_bundle"
    )

    amount: Mapped[Decimal] = mapped_column(
        DECIMAL(18, 6),
        comment="Amount in USDC"
    )

    destination: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        comment="Receiving address"
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default="completed",
        comment="Movement status"
    )

    __table_args__ = (
        Index("idx_transactions_account", "account_id", "type"),
    )

    def __repr__(self) -> str:
        return f"<TransactionRecord(account={self.account_id}, type={self.type}, amount={self.amount})>"
