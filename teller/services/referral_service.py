"""
Referral ledger: referrer resolution, payouts and leaderboard points.

A referred account earns its referrer a USDC payout (a percentage of the
tier price, disbursed later by a separate process) and leaderboard points.
Each referrer is rewarded for at most referral_cap referrals.
"""

from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, update, desc
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

import structlog

from teller.core.config import settings as default_settings, Settings
from teller.core.exceptions import LedgerWriteError
from teller.models.base import utcnow
from teller.models.account import Account
from teller.models.referral import ReferralPayout, LeaderboardEntry

logger = structlog.get_logger(__name__)


class ReferralLedger:
    """Referral bookkeeping inside the caller's transaction."""

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or default_settings
        self.logger = logger.bind(service="referral_ledger")

    async def resolve_referrer(self, code: Optional[str], agent_id: str) -> Optional[Account]:
        """
        Find the account a referral code belongs to.

        Returns None, without raising, when the code is empty or unknown,
        when it is the agent's own code, or when the referrer is at the cap.
        """
        if not code:
            return None

        result = await self.db.execute(
            select(Account).where(Account.referral_code == code.strip().upper())
        )
        referrer = result.scalar_one_or_none()

        if referrer is None:
            self.logger.info("Unknown referral code", code=code, agent_id=agent_id)
            return None

        if referrer.agent_id == agent_id:
            self.logger.info("Self-referral ignored", agent_id=agent_id)
            return None

        if referrer.referral_count >= self.settings.referral_cap:
            self.logger.info(
                "Referral cap reached",
                referrer=referrer.agent_id,
                referral_count=referrer.referral_count,
                cap=self.settings.referral_cap,
            )
            return None

        return referrer

    async def reward(
        self,
        referrer: Account,
        referred: Account,
        referred_tier: str
    ) -> Optional[ReferralPayout]:
        """
        Record the payout and points for one referred account.

        Never raises: a failed write is logged as a LedgerWriteError and the
        enclosing provisioning carries on. Returns the payout when it was
        persisted.
        """
        usdc_amount = (self.settings.tier_price(referred_tier) * self.settings.referral_percent).quantize(
            Decimal("0.000001")
        )
        points = self.settings.referral_points.get(referred_tier, 0)

        try:
            payout = await self._record_payout(referrer, referred, referred_tier, usdc_amount, points)
        except LedgerWriteError as e:
            self.logger.error("Referral payout not recorded", error=e.message, **e.details)
            return None

        try:
            await self._add_points(referrer.agent_id, points)
        except LedgerWriteError as e:
            self.logger.error("Leaderboard points not credited", error=e.message, **e.details)

        try:
            await self._increment_referral_count(referrer)
        except LedgerWriteError as e:
            self.logger.error("Referral count not incremented", error=e.message, **e.details)

        self.logger.info(
            "Referral rewarded",
            referrer=referrer.agent_id,
            referred=referred.agent_id,
            tier=referred_tier,
            usdc=str(usdc_amount),
            points=points,
        )
        return payout

    async def leaderboard(self, limit: int = 10) -> List[LeaderboardEntry]:
        result = await self.db.execute(
            select(LeaderboardEntry)
            .order_by(desc(LeaderboardEntry.total_points), LeaderboardEntry.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def pending_usdc_payouts(self, referrer_id: str) -> List[ReferralPayout]:
        """Payouts still waiting for USDC disbursement."""
        result = await self.db.execute(
            select(ReferralPayout)
            .where(
                ReferralPayout.referrer_id == referrer_id,
                ReferralPayout.usdc_paid.is_(False),
            )
            .order_by(ReferralPayout.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _record_payout(
        self,
        referrer: Account,
        referred: Account,
        referred_tier: str,
        usdc_amount: Decimal,
        points: int
    ) -> ReferralPayout:
        payout = ReferralPayout(
            referrer_id=referrer.agent_id,
            referred_id=referred.agent_id,
            referred_tier=referred_tier,
            usdc_amount=usdc_amount,
            points_amount=points,
            points_paid=True,
            usdc_paid=False,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(payout)
                await self.db.flush()
        except Exception as e:
            raise LedgerWriteError(
                f"Failed to record payout: {e}",
                details={"referrer": referrer.agent_id, "referred": referred.agent_id},
            ) from e
        return payout

    async def _add_points(self, agent_id: str, points: int) -> None:
        try:
            async with self.db.begin_nested():
                result = await self.db.execute(
                    update(LeaderboardEntry)
                    .where(LeaderboardEntry.agent_id == agent_id)
                    .values(
                        total_points=LeaderboardEntry.total_points + points,
                        updated_at=utcnow(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    self.db.add(LeaderboardEntry(agent_id=agent_id, total_points=points))
                    await self.db.flush()
        except Exception as e:
            raise LedgerWriteError(
                f"Failed to credit points: {e}",
                details={"agent_id": agent_id, "points": points},
            ) from e

    async def _increment_referral_count(self, referrer: Account) -> None:
        try:
            async with self.db.begin_nested():
                result = await self.db.execute(
                    update(Account)
                    .where(
                        Account.id == referrer.id,
                        Account.referral_count < self.settings.referral_cap,
                    )
                    .values(referral_count=Account.referral_count + 1)
                    .execution_options(synchronize_session=False)
                )
        except Exception as e:
            raise LedgerWriteError(
                f"Failed to increment referral count: {e}",
                details={"referrer": referrer.agent_id},
            ) from e

        if result.rowcount == 1:
            set_committed_value(referrer, "referral_count", referrer.referral_count + 1)
