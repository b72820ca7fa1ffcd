"""
Shared handling for paid intake endpoints.

A request without a payment reference gets payment instructions (402); with
one, it is enqueued. The payment itself is confirmed on-chain by the
ingestor; intake only records the claim.
"""

from decimal import Decimal
from typing import Optional, Tuple

import structlog

from teller.core.config import Settings
from teller.core.exceptions import PaymentRequiredError, ValidationError
from teller.models.queue import QueueEntry, QueueTier
from teller.services.queue_service import PriorityQueue
from teller.api.schemas.accounts import PaidRequest


logger = structlog.get_logger(__name__)


def format_usd(amount: Decimal) -> str:
    return f"${amount.normalize():f}"


def tier_description(tier: QueueTier, settings: Settings) -> str:
    """Human readable summary of what a payment for the tier buys."""
    chains = ", ".join(settings.gas_bundle_chains)

    if tier is QueueTier.GAS_BUNDLE:
        per_chain = settings.gas_bundle_per_chain["standalone"]
        return f"Gas Bundle: {format_usd(per_chain)} of gas on each of {chains}"

    gas = format_usd(settings.nxt_layer_gas[tier.value])
    base = f"NXT Layer wallet, {len(settings.gas_bundle_chains)} chain addresses ({chains}), {gas} NXT Layer gas"

    if tier is QueueTier.REGULAR:
        return f"Regular Account: {base}"

    bundle = format_usd(settings.gas_bundle_per_chain[tier.value] * len(settings.gas_bundle_chains))
    if tier is QueueTier.PREMIUM:
        return f"Premium Account: {base}, {bundle} gas bundle ({len(settings.gas_bundle_chains)} chains), priority queue, NFT entitlement"
    return f"VIP Account: {base}, {bundle} gas bundle ({len(settings.gas_bundle_chains)} chains), instant queue (front of line), VIP NFT"


def tier_includes(tier: QueueTier, settings: Settings) -> dict:
    includes = {"nxt_layer_gas": format_usd(settings.nxt_layer_gas[tier.value])} if tier.opens_account else {}

    if tier.includes_perks:
        per_chain = format_usd(settings.gas_bundle_per_chain[tier.value])
        includes["gas_bundle"] = [f"{per_chain} {chain}" for chain in settings.gas_bundle_chains]
    if tier is QueueTier.PREMIUM:
        includes.update(priority_queue=True, nft_entitlement=True)
    elif tier is QueueTier.VIP:
        includes.update(instant_queue=True, vip_nft=True)

    return includes


def payment_required(tier: QueueTier, settings: Settings) -> PaymentRequiredError:
    amount = settings.tier_price(tier.value)
    description = tier_description(tier, settings)
    payment = {
        "chain": settings.payment_chain,
        "token": settings.payment_token,
        "contract": settings.usdc_contract,
        "amount": float(amount),
        "recipient": settings.safe_address,
        "description": description,
    }
    instructions = (
        f"Send {amount.normalize():f} {settings.payment_token} to {settings.safe_address} "
        f"on {settings.payment_chain}. Include your agent ID in the request after payment."
    )
    return PaymentRequiredError(
        "Payment required",
        details={"payment": payment, "instructions": instructions},
    )


def estimated_wait_minutes(agents_ahead: int, settings: Settings) -> float:
    return agents_ahead * settings.queue_cooldown_seconds / 60


async def enqueue_paid_request(
    request: Optional[PaidRequest],
    tier: QueueTier,
    queue: PriorityQueue,
    settings: Settings
) -> Tuple[QueueEntry, int]:
    """
    Enqueue a paid request and return the entry with the number of agents ahead.

    Raises:
        PaymentRequiredError: no payment reference
        ValidationError: payment reference without agent id
        PaymentAlreadyProcessedError: payment reference already queued
    """
    if request is None or not request.payment_ref:
        raise payment_required(tier, settings)

    if not request.agent_id:
        raise ValidationError("Missing agent_id", details={"field": "agentId"})

    entry = await queue.insert(
        payment_ref=request.payment_ref,
        agent_id=request.agent_id,
        tier=tier,
        amount=settings.tier_price(tier.value),
        referral_code=request.referral_code,
    )
    agents_ahead = await queue.agents_ahead(entry)

    logger.info(
        "Paid request queued",
        agent_id=request.agent_id,
        tier=tier.value,
        position=entry.position,
        agents_ahead=agents_ahead,
    )
    return entry, agents_ahead
