"""
Standalone gas bundle endpoint.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, status

from teller.core.config import Settings
from teller.models.queue import QueueTier
from teller.services.queue_service import PriorityQueue
from teller.api.dependencies import get_app_settings, get_queue
from teller.api.intake import enqueue_paid_request, estimated_wait_minutes, format_usd
from teller.api.schemas.accounts import PaidRequest, GasBundleQueuedResponse
from teller.api.schemas.common import ErrorResponse

router = APIRouter(tags=["Gas"])


@router.post(
    "/gas-bundle",
    response_model=GasBundleQueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse},
        402: {"model": ErrorResponse, "description": "Payment instructions"},
        409: {"model": ErrorResponse},
    },
)
async def buy_gas_bundle(
    request: Optional[PaidRequest] = Body(default=None),
    queue: PriorityQueue = Depends(get_queue),
    settings: Settings = Depends(get_app_settings),
):
    """Queue gas delivery on every bundle chain for an existing account."""
    tier = QueueTier.GAS_BUNDLE
    entry, agents_ahead = await enqueue_paid_request(request, tier, queue, settings)

    return GasBundleQueuedResponse(
        tier=tier.value,
        position=entry.position,
        agents_ahead=agents_ahead,
        estimated_wait_minutes=estimated_wait_minutes(agents_ahead, settings),
        chains=list(settings.gas_bundle_chains),
        per_chain=format_usd(settings.gas_bundle_per_chain["standalone"]),
        message="Gas bundle queued for delivery.",
    )
