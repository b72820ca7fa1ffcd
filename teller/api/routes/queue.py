"""
Queue status endpoint.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from teller.core.config import Settings
from teller.models.queue import QueueStatus
from teller.services.queue_service import PriorityQueue
from teller.api.dependencies import get_app_settings, get_queue
from teller.api.intake import estimated_wait_minutes
from teller.api.schemas.accounts import AgentEntry, QueueStatusResponse

router = APIRouter(tags=["Queue"])


@router.get("/queue/status", response_model=QueueStatusResponse)
async def queue_status(
    agent_id: Optional[str] = Query(None, description="Include this agent's recent entries"),
    queue: PriorityQueue = Depends(get_queue),
    settings: Settings = Depends(get_app_settings),
):
    stats = await queue.stats()

    agent_entries = None
    if agent_id:
        agent_entries = []
        for entry in await queue.entries_for_agent(agent_id):
            ahead = None
            if entry.status == QueueStatus.PENDING.value:
                ahead = await queue.agents_ahead(entry)
            agent_entries.append(AgentEntry(
                payment_ref=entry.payment_ref,
                tier=entry.tier,
                status=entry.status,
                position=entry.position,
                agents_ahead=ahead,
                failure_reason=entry.failure_reason,
            ))

    pricing = {
        f"{tier}_account": f"{price.normalize():f} {settings.payment_token}"
        for tier, price in settings.tier_prices.items()
    }
    pricing["gas_bundle"] = f"{settings.gas_bundle_price.normalize():f} {settings.payment_token}"

    return QueueStatusResponse(
        pending_count=stats.pending_count,
        processing_count=stats.processing_count,
        completed_count=stats.completed_count,
        failed_count=stats.failed_count,
        cooldown_seconds=settings.queue_cooldown_seconds,
        estimated_wait_minutes=estimated_wait_minutes(stats.pending_count, settings),
        pricing=pricing,
        supported_chains=list(settings.gas_bundle_chains),
        agent_entries=agent_entries,
    )
