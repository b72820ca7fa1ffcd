"""
Provisioning worker - the single consumer of the priority queue.

At most one entry is handled at a time. For a new account the steps are:
  1. resolve the referral code
  2. create the NXT Layer address
  3. persist the account and log the payment
  4. send the tier's NXT Layer gas
  5. premium and vip: deliver the multi-chain gas bundle
  6. reward the referrer
All database writes for an entry share one transaction with its completed
transition, so a failed step leaves no account behind. A failed entry is
terminal. After each entry the worker cools down before taking the next.
"""

import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from teller.core.config import settings as default_settings, Settings
from teller.core.database import get_async_session
from teller.core.exceptions import TellerException, ProvisioningError
from teller.models.base import utcnow
from teller.models.account import Account, TransactionRecord, TransactionType
from teller.models.queue import QueueEntry, QueueTier
from teller.scheduler.clock import Clock, system_clock
from teller.services.provisioning_client import ProvisioningBackend
from teller.services.queue_service import PriorityQueue
from teller.services.referral_service import ReferralLedger


logger = structlog.get_logger(__name__)


@dataclass
class ProvisioningOutcome:
    """Result of handling one queue entry."""
    entry_id: int
    payment_ref: str
    agent_id: str
    tier: str
    success: bool
    address: Optional[str] = None
    referrer: Optional[str] = None
    error: Optional[str] = None


class ProvisioningWorker:
    """Serialized consumer that turns queue entries into accounts."""

    def __init__(
        self,
        queue: PriorityQueue,
        backend: ProvisioningBackend,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None
    ):
        self.queue = queue
        self.backend = backend
        self.clock = clock or system_clock
        self.settings = settings or default_settings
        self.logger = logger.bind(service="provisioning_worker")

        # Single-slot execution token, held from dequeue through cooldown
        self._token = asyncio.Lock()
        self._stopping = asyncio.Event()

        self.processed_count = 0
        self.failed_count = 0

    @property
    def is_busy(self) -> bool:
        return self._token.locked()

    async def process_next(self) -> Optional[ProvisioningOutcome]:
        """
        Handle the next queued entry, then cool down.

        Returns None without waiting when a cycle is already running, when
        the queue is empty, or after shutdown was requested.
        """
        if self._token.locked() or self._stopping.is_set():
            return None

        async with self._token:
            entry = await self.queue.dequeue_next()
            if entry is None:
                return None

            outcome = await self._handle(entry)
            await self._cooldown()
            return outcome

    async def shutdown(self) -> None:
        """Stop taking entries, cut the cooldown short and wait for the in-flight entry."""
        self._stopping.set()
        async with self._token:
            pass
        self.logger.info(
            "Provisioning worker stopped",
            processed=self.processed_count,
            failed=self.failed_count,
        )

    async def _handle(self, entry: QueueEntry) -> ProvisioningOutcome:
        self.logger.info(
            "Processing queue entry",
            entry_id=entry.id,
            agent_id=entry.agent_id,
            tier=entry.tier,
            payment_ref=entry.payment_ref,
        )

        try:
            if entry.queue_tier is QueueTier.GAS_BUNDLE:
                outcome = await self._deliver_standalone_bundle(entry)
            else:
                outcome = await self._provision_account(entry)
        except Exception as e:
            reason = e.message if isinstance(e, TellerException) else f"{type(e).__name__}: {e}"
            self.failed_count += 1
            self.logger.error(
                "Provisioning failed",
                entry_id=entry.id,
                agent_id=entry.agent_id,
                tier=entry.tier,
                error=reason,
            )
            await self._record_failure(entry, reason)
            return ProvisioningOutcome(
                entry_id=entry.id,
                payment_ref=entry.payment_ref,
                agent_id=entry.agent_id,
                tier=entry.tier,
                success=False,
                error=reason,
            )

        self.processed_count += 1
        self.logger.info(
            "Provisioning completed",
            entry_id=entry.id,
            agent_id=entry.agent_id,
            tier=entry.tier,
            address=outcome.address,
        )
        return outcome

    async def _provision_account(self, entry: QueueEntry) -> ProvisioningOutcome:
        tier = entry.queue_tier

        async with get_async_session() as db:
            existing = await db.execute(
                select(Account.id).where(Account.agent_id == entry.agent_id)
            )
            if existing.scalar_one_or_none() is not None:
                raise ProvisioningError(
                    "Agent already has an account",
                    details={"agent_id": entry.agent_id},
                )

            ledger = ReferralLedger(db, self.settings)
            referrer = await ledger.resolve_referrer(entry.referral_code, entry.agent_id)

            address = await self.backend.create_address(entry.agent_id)

            account = Account(
                agent_id=entry.agent_id,
                tier=tier.value,
                address=address,
                nft_entitled=tier.includes_perks,
                gas_bundle_sent=tier.includes_perks,
                referral_code=await self._unique_referral_code(db),
                referred_by=referrer.agent_id if referrer else None,
                referral_count=0,
                last_active=utcnow(),
            )
            db.add(account)
            await db.flush()

            db.add(TransactionRecord(
                account_id=account.id,
                payment_ref=entry.payment_ref,
                type=TransactionType.PAYMENT.value,
                amount=entry.amount,
                destination=self.settings.safe_address,
            ))

            base_gas = self.settings.nxt_layer_gas[tier.value]
            await self.backend.send_value(address, self.settings.nxt_gas_chain, base_gas)
            db.add(TransactionRecord(
                account_id=account.id,
                payment_ref=entry.payment_ref,
                type=TransactionType.GAS_BUNDLE.value,
                amount=base_gas,
                destination=address,
            ))

            if tier.includes_perks:
                total = await self._deliver_gas_bundle(
                    address, self.settings.gas_bundle_per_chain[tier.value]
                )
                db.add(TransactionRecord(
                    account_id=account.id,
                    payment_ref=entry.payment_ref,
                    type=TransactionType.GAS_BUNDLE.value,
                    amount=total,
                    destination=address,
                ))

            await db.flush()

            if referrer is not None:
                await ledger.reward(referrer, account, tier.value)

            await self.queue.mark_completed(entry.id, db)

        return ProvisioningOutcome(
            entry_id=entry.id,
            payment_ref=entry.payment_ref,
            agent_id=entry.agent_id,
            tier=tier.value,
            success=True,
            address=address,
            referrer=referrer.agent_id if referrer else None,
        )

    async def _deliver_standalone_bundle(self, entry: QueueEntry) -> ProvisioningOutcome:
        async with get_async_session() as db:
            result = await db.execute(
                select(Account).where(Account.agent_id == entry.agent_id)
            )
            account = result.scalar_one_or_none()
            if account is None:
                raise ProvisioningError(
                    "No account found for gas bundle",
                    details={"agent_id": entry.agent_id},
                )

            total = await self._deliver_gas_bundle(
                account.address, self.settings.gas_bundle_per_chain["standalone"]
            )
            db.add(TransactionRecord(
                account_id=account.id,
                payment_ref=entry.payment_ref,
                type=TransactionType.GAS_BUNDLE.value,
                amount=total,
                destination=account.address,
            ))
            account.gas_bundle_sent = True
            account.last_active = utcnow()
            await db.flush()

            await self.queue.mark_completed(entry.id, db)

        return ProvisioningOutcome(
            entry_id=entry.id,
            payment_ref=entry.payment_ref,
            agent_id=entry.agent_id,
            tier=entry.tier,
            success=True,
            address=account.address,
        )

    async def _deliver_gas_bundle(self, address: str, per_chain: Decimal) -> Decimal:
        """Send per_chain to address on every bundle chain; returns the total sent."""
        total = Decimal("0")
        for chain in self.settings.gas_bundle_chains:
            await self.backend.send_value(address, chain, per_chain)
            total += per_chain
        return total

    async def _unique_referral_code(self, db: AsyncSession, attempts: int = 10) -> str:
        for _ in range(attempts):
            code = Account.generate_referral_code()
            result = await db.execute(
                select(Account.id).where(Account.referral_code == code)
            )
            if result.scalar_one_or_none() is None:
                return code
        raise ProvisioningError("Could not generate a unique referral code")

    async def _record_failure(self, entry: QueueEntry, reason: str) -> None:
        try:
            await self.queue.mark_failed(entry.id, reason)
        except Exception as e:
            # Entry stays processing; reconcile-processing recovers it
            self.logger.error(
                "Could not mark entry failed",
                entry_id=entry.id,
                error=str(e),
            )

    async def _cooldown(self) -> None:
        seconds = self.settings.queue_cooldown_seconds
        if seconds <= 0 or self._stopping.is_set():
            return

        self.logger.debug("Cooling down", seconds=seconds)
        sleeper = asyncio.ensure_future(self.clock.sleep(seconds))
        stopper = asyncio.ensure_future(self._stopping.wait())

        done, pending = await asyncio.wait(
            {sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
