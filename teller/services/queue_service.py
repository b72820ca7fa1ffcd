"""
Tier-prioritized provisioning queue.

Pending entries are ordered by a single integer position, lower served
first. Insertion keeps the pending range sorted by tier priority:
  - a new entry goes behind every pending entry of equal or higher priority
  - every pending entry of strictly lower priority shifts back by one
Dequeue hands each entry to exactly one caller.
"""

import asyncio
from dataclasses import dataclass, asdict
from decimal import Decimal
from typing import Dict, List, Optional, Union

from sqlalchemy import select, update, func, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from teller.core.database import get_async_session
from teller.core.exceptions import (
    PaymentAlreadyProcessedError, NotFoundError, ValidationError
)
from teller.models.base import utcnow
from teller.models.queue import QueueEntry, QueueStatus, QueueTier


logger = structlog.get_logger(__name__)

# Key for pg_advisory_xact_lock; serializes inserters across processes
QUEUE_ADVISORY_LOCK_KEY = 402_001


@dataclass
class QueueStats:
    """Entry counts by status."""
    pending_count: int = 0
    processing_count: int = 0
    completed_count: int = 0
    failed_count: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class PriorityQueue:
    """
    Durable priority queue over the queue table.

    One instance should be shared per process: its lock is the single-writer
    guard for position assignment and claiming.
    """

    def __init__(self, max_claim_attempts: int = 5):
        self.logger = logger.bind(service="priority_queue")
        self.max_claim_attempts = max_claim_attempts
        self._lock = asyncio.Lock()

    async def insert(
        self,
        payment_ref: str,
        agent_id: str,
        tier: Union[QueueTier, str],
        amount: Decimal,
        referral_code: Optional[str] = None,
    ) -> QueueEntry:
        """
        Enqueue a paid request and return it with its assigned position.

        Raises:
            PaymentAlreadyProcessedError: payment_ref is already queued
            ValidationError: unknown tier
        """
        tier = self._coerce_tier(tier)

        async with self._lock:
            try:
                async with get_async_session() as db:
                    await self._acquire_advisory_lock(db)

                    if await self._payment_exists(db, payment_ref):
                        raise PaymentAlreadyProcessedError(payment_ref)

                    position = await self._claim_position(db, tier)

                    entry = QueueEntry(
                        payment_ref=payment_ref,
                        agent_id=agent_id,
                        tier=tier.value,
                        priority=tier.priority,
                        amount=Decimal(amount),
                        position=position,
                        status=QueueStatus.PENDING.value,
                        referral_code=referral_code,
                    )
                    db.add(entry)
                    await db.flush()
            except IntegrityError as e:
                # A concurrent writer outside this process won the unique payment_ref
                raise PaymentAlreadyProcessedError(payment_ref) from e

        self.logger.info(
            "Added to queue",
            agent_id=agent_id,
            tier=tier.value,
            position=entry.position,
            payment_ref=payment_ref,
        )
        return entry

    async def dequeue_next(self) -> Optional[QueueEntry]:
        """
        Claim the pending entry with the lowest position.

        The entry is flipped to processing in the same transaction that
        selects it; a conditional update guards against another consumer
        claiming it first.
        """
        async with self._lock:
            for attempt in range(1, self.max_claim_attempts + 1):
                async with get_async_session() as db:
                    result = await db.execute(
                        select(QueueEntry)
                        .where(QueueEntry.status == QueueStatus.PENDING.value)
                        .order_by(QueueEntry.position)
                        .limit(1)
                        .with_for_update(skip_locked=True)
                    )
                    candidate = result.scalar_one_or_none()
                    if candidate is None:
                        return None

                    claimed = await db.execute(
                        update(QueueEntry)
                        .where(
                            QueueEntry.id == candidate.id,
                            QueueEntry.status == QueueStatus.PENDING.value,
                        )
                        .values(status=QueueStatus.PROCESSING.value, updated_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )

                    if claimed.rowcount == 1:
                        db.expunge(candidate)
                        candidate.status = QueueStatus.PROCESSING.value
                        self.logger.info(
                            "Claimed queue entry",
                            entry_id=candidate.id,
                            agent_id=candidate.agent_id,
                            tier=candidate.tier,
                            position=candidate.position,
                        )
                        return candidate

                self.logger.debug("Queue entry claimed elsewhere, retrying", attempt=attempt)

        return None

    async def mark_completed(self, entry_id: int, db: Optional[AsyncSession] = None) -> None:
        """Transition a processing entry to completed, inside db's transaction if given."""
        statement = (
            update(QueueEntry)
            .where(
                QueueEntry.id == entry_id,
                QueueEntry.status == QueueStatus.PROCESSING.value,
            )
            .values(status=QueueStatus.COMPLETED.value, processed_at=utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if db is not None:
            await db.execute(statement)
            return

        async with get_async_session() as session:
            await session.execute(statement)

    async def mark_failed(self, entry_id: int, reason: str) -> None:
        """Transition a processing entry to failed. Terminal: nothing retries it."""
        async with get_async_session() as db:
            await db.execute(
                update(QueueEntry)
                .where(
                    QueueEntry.id == entry_id,
                    QueueEntry.status == QueueStatus.PROCESSING.value,
                )
                .values(
                    status=QueueStatus.FAILED.value,
                    failure_reason=reason[:2000],
                    processed_at=utcnow(),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )

    async def stats(self) -> QueueStats:
        """Count entries per status."""
        async with get_async_session() as db:
            result = await db.execute(
                select(QueueEntry.status, func.count(QueueEntry.id))
                .group_by(QueueEntry.status)
            )
            counts = {status: count for status, count in result.all()}

        return QueueStats(
            pending_count=counts.get(QueueStatus.PENDING.value, 0),
            processing_count=counts.get(QueueStatus.PROCESSING.value, 0),
            completed_count=counts.get(QueueStatus.COMPLETED.value, 0),
            failed_count=counts.get(QueueStatus.FAILED.value, 0),
        )

    async def is_payment_processed(self, payment_ref: str) -> bool:
        async with get_async_session() as db:
            return await self._payment_exists(db, payment_ref)

    async def agents_ahead(self, entry: QueueEntry) -> int:
        """Number of pending entries that will be served before this one."""
        async with get_async_session() as db:
            result = await db.execute(
                select(func.count(QueueEntry.id)).where(
                    QueueEntry.status == QueueStatus.PENDING.value,
                    QueueEntry.position < entry.position,
                )
            )
            return result.scalar_one()

    async def entries_for_agent(self, agent_id: str, limit: int = 10) -> List[QueueEntry]:
        """Most recent entries for an agent."""
        async with get_async_session() as db:
            result = await db.execute(
                select(QueueEntry)
                .where(QueueEntry.agent_id == agent_id)
                .order_by(QueueEntry.id.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def pending_entries(self) -> List[QueueEntry]:
        """Pending entries in service order."""
        async with get_async_session() as db:
            result = await db.execute(
                select(QueueEntry)
                .where(QueueEntry.status == QueueStatus.PENDING.value)
                .order_by(QueueEntry.position)
            )
            return list(result.scalars().all())

    async def reconcile_processing(self, reason: str = "interrupted") -> int:
        """
        Fail every entry left in processing by a crashed worker.

        Operator action only; the worker never calls this. Must not run while
        a worker is active.
        """
        async with get_async_session() as db:
            result = await db.execute(
                update(QueueEntry)
                .where(QueueEntry.status == QueueStatus.PROCESSING.value)
                .values(
                    status=QueueStatus.FAILED.value,
                    failure_reason=reason,
                    processed_at=utcnow(),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount

        self.logger.warning("Reconciled stuck processing entries", count=count, reason=reason)
        return count

    async def requeue(self, entry_id: int) -> QueueEntry:
        """
        Re-drive a failed entry: back to pending, behind its priority peers.

        Raises:
            NotFoundError: no such entry
            ValidationError: entry is not failed
        """
        async with self._lock:
            async with get_async_session() as db:
                await self._acquire_advisory_lock(db)

                entry = await db.get(QueueEntry, entry_id)
                if entry is None:
                    raise NotFoundError(f"Queue entry {entry_id} not found")
                if entry.status != QueueStatus.FAILED.value:
                    raise ValidationError(
                        f"Only failed entries can be requeued, entry is {entry.status}",
                        details={"entry_id": entry_id, "status": entry.status},
                    )

                entry.position = await self._claim_position(db, entry.queue_tier)
                entry.status = QueueStatus.PENDING.value
                entry.failure_reason = None
                entry.processed_at = None
                await db.flush()

        self.logger.info("Requeued failed entry", entry_id=entry_id, position=entry.position)
        return entry

    async def _claim_position(self, db: AsyncSession, tier: QueueTier) -> int:
        """Pick the position for a new pending entry, shifting lower tiers back."""
        result = await db.execute(select(func.max(QueueEntry.position)))
        position = (result.scalar() or 0) + 1

        result = await db.execute(
            select(func.min(QueueEntry.position)).where(
                QueueEntry.status == QueueStatus.PENDING.value,
                QueueEntry.priority < tier.priority,
            )
        )
        first_lower = result.scalar()

        if first_lower is not None:
            await db.execute(
                update(QueueEntry)
                .where(
                    QueueEntry.status == QueueStatus.PENDING.value,
                    QueueEntry.position >= first_lower,
                )
                .values(position=QueueEntry.position + 1)
                .execution_options(synchronize_session=False)
            )
            position = first_lower

        return position

    async def _payment_exists(self, db: AsyncSession, payment_ref: str) -> bool:
        result = await db.execute(
            select(QueueEntry.id).where(QueueEntry.payment_ref == payment_ref).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def _acquire_advisory_lock(self, db: AsyncSession) -> None:
        if db.bind is not None and db.bind.dialect.name == "postgresql":
            await db.execute(
                text("SELECT pg_advisory_xact_lock(:key)"),
                {"key": QUEUE_ADVISORY_LOCK_KEY},
            )

    @staticmethod
    def _coerce_tier(tier: Union[QueueTier, str]) -> QueueTier:
        try:
            return QueueTier(tier)
        except ValueError:
            raise ValidationError(
                f"Unknown tier: {tier}",
                details={"allowed": [t.value for t in QueueTier]},
            )


# Global queue instance
_priority_queue: Optional[PriorityQueue] = None


def get_priority_queue() -> PriorityQueue:
    """Get or create the process-wide PriorityQueue."""
    global _priority_queue
    if _priority_queue is None:
        _priority_queue = PriorityQueue()
    return _priority_queue
