"""
Test the priority queue: ordering, idempotency and exclusive dequeue.
"""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio

from teller.core.database import init_database, close_database, DatabaseManager
from teller.core.exceptions import PaymentAlreadyProcessedError, NotFoundError, ValidationError
from teller.models.queue import QueueStatus, QueueTier
from teller.services.queue_service import PriorityQueue


async def drain(queue):
    """Dequeue everything, returning payment refs in service order."""
    refs = []
    while True:
        entry = await queue.dequeue_next()
        if entry is None:
            return refs
        refs.append(entry.payment_ref)


@pytest.mark.asyncio
async def test_premium_takes_position_of_first_regular(database, queue):
    regular = await queue.insert("tx-r", "0xaaa", "regular", Decimal("10"))
    assert regular.position == 1

    premium = await queue.insert("tx-p", "0xbbb", "premium", Decimal("50"))
    assert premium.position == 1

    pending = await queue.pending_entries()
    assert [(e.payment_ref, e.position) for e in pending] == [("tx-p", 1), ("tx-r", 2)]

    first = await queue.dequeue_next()
    assert first.payment_ref == "tx-p"
    assert first.status == QueueStatus.PROCESSING.value


@pytest.mark.asyncio
async def test_equal_tiers_are_first_in_first_out(database, queue):
    for ref in ("tx-1", "tx-2", "tx-3"):
        await queue.insert(ref, f"0x{ref}", QueueTier.REGULAR, Decimal("10"))

    assert await drain(queue) == ["tx-1", "tx-2", "tx-3"]


@pytest.mark.asyncio
async def test_mixed_tiers_dequeue_by_priority_then_arrival(database, queue):
    await queue.insert("r1", "0x01", "regular", Decimal("10"))
    await queue.insert("p1", "0x02", "premium", Decimal("50"))
    await queue.insert("r2", "0x03", "regular", Decimal("10"))
    await queue.insert("v1", "0x04", "vip", Decimal("100"))
    await queue.insert("p2", "0x05", "premium", Decimal("50"))

    pending = await queue.pending_entries()
    assert [e.position for e in pending] == [1, 2, 3, 4, 5]

    assert await drain(queue) == ["v1", "p1", "p2", "r1", "r2"]


@pytest.mark.asyncio
async def test_gas_bundle_ranks_with_regular(database, queue):
    await queue.insert("r1", "0x01", "regular", Decimal("10"))
    await queue.insert("g1", "0x02", "gas_bundle", Decimal("15"))
    await queue.insert("p1", "0x03", "premium", Decimal("50"))

    assert await drain(queue) == ["p1", "r1", "g1"]


@pytest.mark.asyncio
async def test_processing_entries_are_never_reranked(database, queue):
    await queue.insert("r1", "0x01", "regular", Decimal("10"))
    claimed = await queue.dequeue_next()
    assert claimed.payment_ref == "r1"

    vip = await queue.insert("v1", "0x02", "vip", Decimal("100"))
    assert vip.position == 2

    later = await queue.insert("r2", "0x03", "regular", Decimal("10"))
    assert later.position == 3

    assert await drain(queue) == ["v1", "r2"]


@pytest.mark.asyncio
async def test_duplicate_payment_ref_conflicts(database, queue):
    await queue.insert("tx1", "0xagent-a", "regular", Decimal("10"))

    with pytest.raises(PaymentAlreadyProcessedError) as exc_info:
        await queue.insert("tx1", "0xagent-a", "regular", Decimal("10"))
    assert exc_info.value.details["payment_ref"] == "tx1"

    stats = await queue.stats()
    assert stats.pending_count == 1


@pytest.mark.asyncio
async def test_duplicate_conflicts_after_completion(database, queue):
    entry = await queue.insert("tx1", "0xagent-a", "regular", Decimal("10"))
    await queue.dequeue_next()
    await queue.mark_completed(entry.id)

    assert await queue.is_payment_processed("tx1")
    with pytest.raises(PaymentAlreadyProcessedError):
        await queue.insert("tx1", "0xagent-b", "vip", Decimal("100"))


@pytest.mark.asyncio
async def test_unknown_tier_is_rejected(database, queue):
    with pytest.raises(ValidationError):
        await queue.insert("tx1", "0xagent", "platinum", Decimal("500"))

    assert not await queue.is_payment_processed("tx1")


@pytest.mark.asyncio
async def test_concurrent_dequeues_never_share_an_entry(database, queue):
    for i in range(3):
        await queue.insert(f"tx-{i}", f"0x{i}", "regular", Decimal("10"))

    results = await asyncio.gather(*(queue.dequeue_next() for _ in range(5)))

    claimed = [entry.id for entry in results if entry is not None]
    assert len(claimed) == 3
    assert len(set(claimed)) == 3
    assert results.count(None) == 2
    assert await queue.dequeue_next() is None


@pytest.mark.asyncio
async def test_stats_and_agents_ahead(database, queue):
    first = await queue.insert("tx-1", "0x01", "regular", Decimal("10"))
    await queue.insert("tx-2", "0x02", "regular", Decimal("10"))
    third = await queue.insert("tx-3", "0x03", "vip", Decimal("100"))

    assert await queue.agents_ahead(third) == 0

    # Positions moved; agents_ahead reads the stored entry's position
    pending = {e.payment_ref: e for e in await queue.pending_entries()}
    assert await queue.agents_ahead(pending["tx-2"]) == 2

    claimed = await queue.dequeue_next()
    await queue.mark_failed(claimed.id, "boom")
    claimed = await queue.dequeue_next()
    await queue.mark_completed(claimed.id)

    stats = await queue.stats()
    assert stats.to_dict() == {
        "pending_count": 1,
        "processing_count": 0,
        "completed_count": 1,
        "failed_count": 1,
    }
    assert claimed.payment_ref == first.payment_ref


@pytest.mark.asyncio
async def test_entries_for_agent(database, queue):
    await queue.insert("tx-1", "0xagent", "regular", Decimal("10"))
    await queue.insert("tx-2", "0xother", "regular", Decimal("10"))
    await queue.insert("tx-3", "0xagent", "gas_bundle", Decimal("15"))

    entries = await queue.entries_for_agent("0xagent")
    assert [e.payment_ref for e in entries] == ["tx-3", "tx-1"]


@pytest.mark.asyncio
async def test_mark_failed_is_terminal(database, queue):
    entry = await queue.insert("tx-1", "0x01", "regular", Decimal("10"))
    await queue.dequeue_next()
    await queue.mark_failed(entry.id, "create address failed")

    # Only processing entries transition
    await queue.mark_completed(entry.id)

    stats = await queue.stats()
    assert stats.failed_count == 1
    assert stats.completed_count == 0
    assert await queue.dequeue_next() is None


@pytest.mark.asyncio
async def test_reconcile_and_requeue(database, queue):
    stuck = await queue.insert("tx-1", "0x01", "premium", Decimal("50"))
    await queue.dequeue_next()
    await queue.insert("tx-2", "0x02", "premium", Decimal("50"))
    await queue.insert("tx-3", "0x03", "regular", Decimal("10"))

    assert await queue.reconcile_processing() == 1
    stats = await queue.stats()
    assert stats.processing_count == 0
    assert stats.failed_count == 1

    requeued = await queue.requeue(stuck.id)
    assert requeued.status == QueueStatus.PENDING.value
    assert requeued.failure_reason is None

    # Back of the premium class, ahead of regular
    assert await drain(queue) == ["tx-2", "tx-1", "tx-3"]


@pytest.mark.asyncio
async def test_requeue_rejects_non_failed_and_missing(database, queue):
    entry = await queue.insert("tx-1", "0x01", "regular", Decimal("10"))

    with pytest.raises(ValidationError):
        await queue.requeue(entry.id)

    with pytest.raises(NotFoundError):
        await queue.requeue(9999)


@pytest_asyncio.fixture
async def file_database(tmp_path):
    """On-disk database, so every session gets its own connection."""
    await init_database(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    await DatabaseManager.create_tables()
    yield
    await close_database()


@pytest.mark.asyncio
async def test_separate_queues_never_share_an_entry(file_database):
    first, second = PriorityQueue(), PriorityQueue()

    await asyncio.gather(*(
        (first if i % 2 else second).insert(f"tx-{i}", f"0x{i}", "regular", Decimal("10"))
        for i in range(6)
    ))

    pending = await first.pending_entries()
    assert sorted(e.position for e in pending) == [1, 2, 3, 4, 5, 6]

    results = await asyncio.gather(*(
        queue.dequeue_next() for _ in range(5) for queue in (first, second)
    ))

    claimed = [entry.id for entry in results if entry is not None]
    assert len(claimed) == 6
    assert len(set(claimed)) == 6
    assert results.count(None) == 4

    stats = await second.stats()
    assert stats.processing_count == 6
    assert stats.pending_count == 0
