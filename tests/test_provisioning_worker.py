"""
Test the provisioning worker: step sequence, partial failures, cooldown and
the single-slot execution token.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select, text

from teller.core.database import get_async_session
from teller.models.account import Account, TransactionRecord, TransactionType
from teller.models.queue import QueueEntry, QueueStatus
from teller.models.referral import LeaderboardEntry, ReferralPayout
from teller.services.provisioning_worker import ProvisioningWorker

from tests.fakes import wait_until, SAFE_ADDRESS


AGENT_A = "0x" + "a1" * 20
AGENT_B = "0x" + "b2" * 20


@pytest.fixture
def worker(queue, backend, clock, test_settings):
    return ProvisioningWorker(queue, backend, clock, test_settings)


async def load_entry(payment_ref):
    async with get_async_session() as db:
        result = await db.execute(select(QueueEntry).where(QueueEntry.payment_ref == payment_ref))
        return result.scalar_one()


async def load_account(agent_id):
    async with get_async_session() as db:
        result = await db.execute(select(Account).where(Account.agent_id == agent_id))
        return result.scalar_one_or_none()


async def load_records():
    async with get_async_session() as db:
        result = await db.execute(select(TransactionRecord).order_by(TransactionRecord.id))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_regular_account_is_provisioned(database, queue, worker, backend):
    await queue.insert("tx-1", AGENT_A, "regular", Decimal("10"))

    outcome = await worker.process_next()

    assert outcome.success
    assert outcome.address == f"nxt1{AGENT_A[2:42]}"

    account = await load_account(AGENT_A)
    assert account.tier == "regular"
    assert account.address == outcome.address
    assert not account.nft_entitled
    assert not account.gas_bundle_sent
    assert account.referral_code

    records = await load_records()
    assert [(r.type, r.amount, r.destination) for r in records] == [
        (TransactionType.PAYMENT.value, Decimal("10"), SAFE_ADDRESS),
        (TransactionType.GAS_BUNDLE.value, Decimal("5"), outcome.address),
    ]
    assert backend.sent == [(outcome.address, "NXT", Decimal("5"))]

    entry = await load_entry("tx-1")
    assert entry.status == QueueStatus.COMPLETED.value
    assert entry.processed_at is not None


@pytest.mark.asyncio
async def test_vip_account_gets_bundle_and_nft(database, queue, worker, backend):
    await queue.insert("tx-1", AGENT_A, "vip", Decimal("100"))

    outcome = await worker.process_next()
    assert outcome.success

    account = await load_account(AGENT_A)
    assert account.nft_entitled
    assert account.gas_bundle_sent

    chains = [chain for _, chain, _ in backend.sent]
    assert chains == ["NXT", "BTC", "ETH", "XRP", "SOL", "BASE"]
    assert all(amount == Decimal("5") for _, chain, amount in backend.sent if chain != "NXT")

    gas_records = [r.amount for r in await load_records() if r.type == TransactionType.GAS_BUNDLE.value]
    assert gas_records == [Decimal("10"), Decimal("25")]


@pytest.mark.asyncio
async def test_failed_gas_bundle_leaves_no_account(database, queue, worker, backend):
    backend.fail_chains = {"SOL"}
    await queue.insert("tx-1", AGENT_A, "premium", Decimal("50"))

    outcome = await worker.process_next()

    assert not outcome.success
    assert "SOL" in outcome.error

    entry = await load_entry("tx-1")
    assert entry.status == QueueStatus.FAILED.value
    assert "SOL" in entry.failure_reason

    assert await load_account(AGENT_A) is None
    assert await load_records() == []


@pytest.mark.asyncio
async def test_failure_does_not_block_next_entry(database, queue, worker, backend):
    backend.fail_create = True
    await queue.insert("tx-1", AGENT_A, "regular", Decimal("10"))
    await queue.insert("tx-2", AGENT_B, "regular", Decimal("10"))

    first = await worker.process_next()
    assert not first.success

    backend.fail_create = False
    second = await worker.process_next()
    assert second.success
    assert second.agent_id == AGENT_B

    assert await worker.process_next() is None
    assert worker.failed_count == 1
    assert worker.processed_count == 1


@pytest.mark.asyncio
async def test_second_account_for_agent_fails(database, queue, worker, backend):
    await queue.insert("tx-1", AGENT_A, "regular", Decimal("10"))
    await queue.insert("tx-2", AGENT_A, "regular", Decimal("10"))

    assert (await worker.process_next()).success
    outcome = await worker.process_next()

    assert not outcome.success
    assert outcome.error == "Agent already has an account"
    assert backend.created == [AGENT_A]


@pytest.mark.asyncio
async def test_empty_queue_returns_without_cooldown(database, queue, backend, clock, test_settings):
    test_settings.queue_cooldown_seconds = 120
    worker = ProvisioningWorker(queue, backend, clock, test_settings)

    assert await worker.process_next() is None
    assert clock.sleeps == []
    assert not worker.is_busy


@pytest.mark.asyncio
async def test_cooldown_holds_the_token(database, queue, backend, clock, test_settings):
    test_settings.queue_cooldown_seconds = 120
    worker = ProvisioningWorker(queue, backend, clock, test_settings)
    await queue.insert("tx-1", AGENT_A, "regular", Decimal("10"))
    await queue.insert("tx-2", AGENT_B, "regular", Decimal("10"))

    task = asyncio.create_task(worker.process_next())
    await wait_until(lambda: clock.pending == 1)

    assert clock.sleeps == [120]
    assert worker.is_busy
    assert await worker.process_next() is None
    assert not task.done()

    clock.advance(120)
    outcome = await task

    assert outcome.success
    assert outcome.payment_ref == "tx-1"
    assert not worker.is_busy
    assert (await load_entry("tx-2")).status == QueueStatus.PENDING.value


@pytest.mark.asyncio
async def test_process_next_is_noop_while_entry_in_flight(database, queue, worker, backend):
    backend.gate = asyncio.Event()
    await queue.insert("tx-1", AGENT_A, "regular", Decimal("10"))

    task = asyncio.create_task(worker.process_next())
    await wait_until(lambda: backend.created == [AGENT_A])

    assert await worker.process_next() is None

    backend.gate.set()
    outcome = await task
    assert outcome.success


@pytest.mark.asyncio
async def test_shutdown_interrupts_cooldown(database, queue, backend, clock, test_settings):
    test_settings.queue_cooldown_seconds = 120
    worker = ProvisioningWorker(queue, backend, clock, test_settings)
    await queue.insert("tx-1", AGENT_A, "regular", Decimal("10"))
    await queue.insert("tx-2", AGENT_B, "regular", Decimal("10"))

    task = asyncio.create_task(worker.process_next())
    await wait_until(lambda: clock.pending == 1)

    await worker.shutdown()

    assert (await task).success
    assert await worker.process_next() is None
    assert (await load_entry("tx-2")).status == QueueStatus.PENDING.value


@pytest.mark.asyncio
async def test_shutdown_lets_in_flight_steps_finish(database, queue, worker, backend):
    backend.gate = asyncio.Event()
    await queue.insert("tx-1", AGENT_A, "vip", Decimal("100"))

    task = asyncio.create_task(worker.process_next())
    await wait_until(lambda: backend.created == [AGENT_A])

    stopper = asyncio.create_task(worker.shutdown())
    await asyncio.sleep(0.05)
    assert not stopper.done()

    backend.gate.set()
    await stopper

    assert (await task).success
    assert (await load_entry("tx-1")).status == QueueStatus.COMPLETED.value


@pytest.mark.asyncio
async def test_standalone_gas_bundle_for_existing_account(database, queue, worker, backend):
    await queue.insert("tx-1", AGENT_A, "regular", Decimal("10"))
    await worker.process_next()
    backend.sent.clear()

    await queue.insert("tx-2", AGENT_A, "gas_bundle", Decimal("15"))
    outcome = await worker.process_next()

    assert outcome.success
    address = f"nxt1{AGENT_A[2:42]}"
    assert backend.sent == [
        (address, chain, Decimal("2.5")) for chain in ("BTC", "ETH", "XRP", "SOL", "BASE")
    ]

    account = await load_account(AGENT_A)
    assert account.gas_bundle_sent

    bundle = [r for r in await load_records() if r.payment_ref == "tx-2"]
    assert len(bundle) == 1
    assert bundle[0].amount == Decimal("12.5")


@pytest.mark.asyncio
async def test_gas_bundle_without_account_fails(database, queue, worker, backend):
    await queue.insert("tx-1", AGENT_A, "gas_bundle", Decimal("15"))

    outcome = await worker.process_next()

    assert not outcome.success
    assert backend.sent == []
    assert (await load_entry("tx-1")).status == QueueStatus.FAILED.value


@pytest.mark.asyncio
async def test_referral_rewarded_on_provisioning(database, queue, worker):
    await queue.insert("tx-1", AGENT_A, "regular", Decimal("10"))
    await worker.process_next()
    referrer = await load_account(AGENT_A)

    await queue.insert("tx-2", AGENT_B, "premium", Decimal("50"), referral_code=referrer.referral_code)
    outcome = await worker.process_next()

    assert outcome.success
    assert outcome.referrer == AGENT_A

    referred = await load_account(AGENT_B)
    assert referred.referred_by == AGENT_A
    assert (await load_account(AGENT_A)).referral_count == 1

    async with get_async_session() as db:
        payout = (await db.execute(select(ReferralPayout))).scalar_one()
        points = (await db.execute(select(LeaderboardEntry))).scalar_one()

    assert payout.referrer_id == AGENT_A
    assert payout.referred_id == AGENT_B
    assert payout.usdc_amount == Decimal("5")
    assert payout.points_amount == 500
    assert payout.points_paid and not payout.usdc_paid
    assert points.agent_id == AGENT_A
    assert points.total_points == 500


@pytest.mark.asyncio
async def test_unknown_referral_code_still_provisions(database, queue, worker):
    await queue.insert("tx-1", AGENT_A, "regular", Decimal("10"), referral_code="NOPE1234")

    outcome = await worker.process_next()

    assert outcome.success
    assert outcome.referrer is None
    assert (await load_account(AGENT_A)).referred_by is None


@pytest.mark.asyncio
async def test_points_failure_still_completes_entry(database, queue, worker):
    await queue.insert("tx-1", AGENT_A, "regular", Decimal("10"))
    await worker.process_next()
    referrer = await load_account(AGENT_A)

    async with get_async_session() as db:
        await db.execute(text(
            "CREATE TRIGGER leaderboard_readonly BEFORE INSERT ON leaderboard "
            "BEGIN SELECT RAISE(ABORT, 'leaderboard is read-only'); END"
        ))

    await queue.insert("tx-2", AGENT_B, "vip", Decimal("100"), referral_code=referrer.referral_code)
    outcome = await worker.process_next()

    assert outcome.success
    assert outcome.referrer == AGENT_A
    assert (await load_entry("tx-2")).status == QueueStatus.COMPLETED.value
    assert (await load_account(AGENT_B)).referred_by == AGENT_A
    assert (await load_account(AGENT_A)).referral_count == 1

    async with get_async_session() as db:
        payout = (await db.execute(select(ReferralPayout))).scalar_one()
        points = (await db.execute(select(LeaderboardEntry))).scalars().all()

    assert payout.referred_id == AGENT_B
    assert points == []
