"""
Test referral resolution, caps and rewards.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select, text

from teller.core.database import get_async_session
from teller.models.account import Account
from teller.models.referral import LeaderboardEntry, ReferralPayout
from teller.services.referral_service import ReferralLedger


def make_account(agent_id, code, tier="regular", referral_count=0):
    return Account(
        agent_id=agent_id,
        tier=tier,
        address=f"nxt1{agent_id}",
        referral_code=code,
        referral_count=referral_count,
    )


@pytest.mark.asyncio
async def test_resolve_referrer_by_code(database, test_settings):
    async with get_async_session() as db:
        db.add(make_account("0xref", "REFCODE1"))
        await db.flush()

        ledger = ReferralLedger(db, test_settings)
        referrer = await ledger.resolve_referrer("refcode1", "0xnew")

    assert referrer is not None
    assert referrer.agent_id == "0xref"


@pytest.mark.asyncio
@pytest.mark.parametrize("code", [None, "", "UNKNOWN1"])
async def test_missing_or_unknown_code_resolves_to_none(database, test_settings, code):
    async with get_async_session() as db:
        db.add(make_account("0xref", "REFCODE1"))
        await db.flush()

        assert await ReferralLedger(db, test_settings).resolve_referrer(code, "0xnew") is None


@pytest.mark.asyncio
async def test_self_referral_is_ignored(database, test_settings):
    async with get_async_session() as db:
        db.add(make_account("0xself", "SELFCODE"))
        await db.flush()

        assert await ReferralLedger(db, test_settings).resolve_referrer("SELFCODE", "0xself") is None


@pytest.mark.asyncio
async def test_referrer_at_cap_resolves_to_none(database, test_settings):
    async with get_async_session() as db:
        db.add(make_account("0xref", "REFCODE1", referral_count=test_settings.referral_cap))
        await db.flush()

        assert await ReferralLedger(db, test_settings).resolve_referrer("REFCODE1", "0xnew") is None


@pytest.mark.asyncio
async def test_reward_records_payout_points_and_count(database, test_settings):
    async with get_async_session() as db:
        referrer = make_account("0xref", "REFCODE1")
        first = make_account("0xnew1", "NEWCODE1", tier="vip")
        second = make_account("0xnew2", "NEWCODE2", tier="regular")
        db.add_all([referrer, first, second])
        await db.flush()

        ledger = ReferralLedger(db, test_settings)
        payout = await ledger.reward(referrer, first, "vip")
        await ledger.reward(referrer, second, "regular")

        assert payout.usdc_amount == Decimal("10")
        assert payout.points_amount == 1000
        assert referrer.referral_count == 2

        pending = await ledger.pending_usdc_payouts("0xref")
        board = await ledger.leaderboard()

    assert [p.referred_id for p in pending] == ["0xnew1", "0xnew2"]
    assert sum(p.usdc_amount for p in pending) == Decimal("11")
    assert [(e.agent_id, e.total_points) for e in board] == [("0xref", 1100)]


@pytest.mark.asyncio
async def test_count_never_exceeds_cap(database, test_settings):
    test_settings.referral_cap = 1

    async with get_async_session() as db:
        referrer = make_account("0xref", "REFCODE1")
        db.add_all([referrer, make_account("0xa", "ACODE001"), make_account("0xb", "BCODE001")])
        await db.flush()

        ledger = ReferralLedger(db, test_settings)
        accounts = (await db.execute(select(Account).where(Account.agent_id.in_(["0xa", "0xb"])))).scalars().all()
        for account in accounts:
            await ledger.reward(referrer, account, "regular")

    async with get_async_session() as db:
        stored = (await db.execute(select(Account).where(Account.agent_id == "0xref"))).scalar_one()
        assert stored.referral_count == 1


@pytest.mark.asyncio
async def test_failed_payout_is_not_fatal(database, test_settings):
    async with get_async_session() as db:
        referrer = make_account("0xref", "REFCODE1")
        referred = make_account("0xnew", "NEWCODE1")
        db.add_all([referrer, referred])
        await db.flush()

        ledger = ReferralLedger(db, test_settings)
        assert await ledger.reward(referrer, referred, "premium") is not None

        # Same referred account again violates the one-payout-per-account rule
        assert await ledger.reward(referrer, referred, "premium") is None

        # The enclosing transaction is still usable
        db.add(make_account("0xlater", "LATER001"))
        await db.flush()

    async with get_async_session() as db:
        payouts = (await db.execute(select(ReferralPayout))).scalars().all()
        points = (await db.execute(select(LeaderboardEntry))).scalar_one()
        stored = (await db.execute(select(Account).where(Account.agent_id == "0xref"))).scalar_one()
        later = (await db.execute(select(Account).where(Account.agent_id == "0xlater"))).scalar_one_or_none()

    assert len(payouts) == 1
    assert points.total_points == 500
    assert stored.referral_count == 1
    assert later is not None


async def block_leaderboard_inserts(db):
    await db.execute(text(
        "CREATE TRIGGER leaderboard_readonly BEFORE INSERT ON leaderboard "
        "BEGIN SELECT RAISE(ABORT, 'leaderboard is read-only'); END"
    ))


@pytest.mark.asyncio
async def test_failed_points_credit_is_not_fatal(database, test_settings):
    async with get_async_session() as db:
        await block_leaderboard_inserts(db)

    async with get_async_session() as db:
        referrer = make_account("0xref", "REFCODE1")
        referred = make_account("0xnew", "NEWCODE1", tier="vip")
        db.add_all([referrer, referred])
        await db.flush()

        payout = await ReferralLedger(db, test_settings).reward(referrer, referred, "vip")

        assert payout is not None
        assert payout.points_amount == 1000
        assert referrer.referral_count == 1

    async with get_async_session() as db:
        payouts = (await db.execute(select(ReferralPayout))).scalars().all()
        points = (await db.execute(select(LeaderboardEntry))).scalars().all()
        stored = (await db.execute(select(Account).where(Account.agent_id == "0xref"))).scalar_one()
        referred_stored = (await db.execute(select(Account).where(Account.agent_id == "0xnew"))).scalar_one_or_none()

    assert [p.referred_id for p in payouts] == ["0xnew"]
    assert points == []
    assert stored.referral_count == 1
    assert referred_stored is not None
