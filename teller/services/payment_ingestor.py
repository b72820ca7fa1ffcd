"""
Payment ingestion: turns USDC transfers into the Safe into queue entries.

Each poll scans the blocks after the last fully handled block, classifies
each transfer into a tier by amount and enqueues it. The transaction hash
is the payment reference, so re-observing a transfer is harmless.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

import structlog

from teller.core.config import settings as default_settings, Settings
from teller.core.exceptions import PaymentAlreadyProcessedError
from teller.models.queue import QueueTier
from teller.services.chain_client import TransferEvent
from teller.services.queue_service import PriorityQueue


logger = structlog.get_logger(__name__)


@dataclass
class IngestResult:
    """A transfer that was enqueued."""
    payment_ref: str
    agent_id: str
    tier: str
    amount: Decimal
    position: int


class PaymentIngestor:
    """Polls the chain for payments and enqueues them."""

    def __init__(self, chain_client, queue: PriorityQueue, settings: Optional[Settings] = None):
        self.chain_client = chain_client
        self.queue = queue
        self.settings = settings or default_settings
        self.logger = logger.bind(service="payment_ingestor")

        self.last_scanned_block: Optional[int] = None
        self.last_error: Optional[str] = None

    def classify_tier(self, amount: Decimal) -> Optional[QueueTier]:
        """Highest ingest tier whose price the amount covers, or None."""
        thresholds = sorted(
            ((self.settings.tier_price(tier), QueueTier(tier)) for tier in self.settings.ingest_tiers),
            key=lambda item: item[0],
            reverse=True,
        )
        for price, tier in thresholds:
            if amount >= price:
                return tier
        return None

    async def poll(self) -> List[IngestResult]:
        """
        Scan new blocks and enqueue the payments found.

        Never raises. On any error the scan position stays where it was so
        the same range is retried on the next poll.
        """
        try:
            head = await self.chain_client.get_block_number()

            if self.last_scanned_block is None:
                from_block = max(head - self.settings.ingest_lookback_blocks + 1, 0)
            else:
                if head <= self.last_scanned_block:
                    return []
                from_block = self.last_scanned_block + 1

            events = await self.chain_client.get_transfers(from_block, head)

            results = []
            for transfer in events:
                result = await self._ingest_event(transfer)
                if result is not None:
                    results.append(result)

            self.last_scanned_block = head
            self.last_error = None

            if results:
                self.logger.info(
                    "Ingested payments",
                    count=len(results),
                    from_block=from_block,
                    to_block=head,
                )
            return results

        except Exception as e:
            self.last_error = str(e)
            self.logger.error(
                "Payment poll failed",
                error=str(e),
                error_type=type(e).__name__,
                last_scanned_block=self.last_scanned_block,
            )
            return []

    async def _ingest_event(self, transfer: TransferEvent) -> Optional[IngestResult]:
        payment_ref = transfer.tx_hash

        if await self.queue.is_payment_processed(payment_ref):
            return None

        amount = transfer.amount(self.settings.usdc_decimals)
        tier = self.classify_tier(amount)
        agent_id = transfer.sender.lower()

        if tier is None:
            self.logger.info(
                "Payment below minimum tier, ignored",
                payment_ref=payment_ref,
                sender=agent_id,
                amount=str(amount),
            )
            return None

        self.logger.info(
            "Payment detected",
            payment_ref=payment_ref,
            sender=agent_id,
            amount=str(amount),
            tier=tier.value,
        )

        try:
            entry = await self.queue.insert(
                payment_ref=payment_ref,
                agent_id=agent_id,
                tier=tier,
                amount=amount,
            )
        except PaymentAlreadyProcessedError:
            self.logger.debug("Payment enqueued concurrently", payment_ref=payment_ref)
            return None

        return IngestResult(
            payment_ref=payment_ref,
            agent_id=agent_id,
            tier=tier.value,
            amount=amount,
            position=entry.position,
        )
