"""
Account opening endpoint.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, status

import structlog

from teller.core.config import Settings
from teller.models.queue import QueueTier
from teller.services.queue_service import PriorityQueue
from teller.api.dependencies import get_app_settings, get_queue, validate_account_tier
from teller.api.intake import enqueue_paid_request, estimated_wait_minutes, tier_includes
from teller.api.schemas.accounts import PaidRequest, QueuedResponse
from teller.api.schemas.common import ErrorResponse

router = APIRouter(tags=["Accounts"])
logger = structlog.get_logger(__name__)


@router.post(
    "/account/open",
    response_model=QueuedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse},
        402: {"model": ErrorResponse, "description": "Payment instructions"},
        409: {"model": ErrorResponse},
    },
)
async def open_account(
    request: Optional[PaidRequest] = Body(default=None),
    tier: QueueTier = Depends(validate_account_tier),
    queue: PriorityQueue = Depends(get_queue),
    settings: Settings = Depends(get_app_settings),
):
    """
    Request a new NXT Layer account.

    Without a payment reference the response is 402 with payment
    instructions. With one, the request joins the provisioning queue.
    """
    entry, agents_ahead = await enqueue_paid_request(request, tier, queue, settings)

    return QueuedResponse(
        tier=tier.value,
        position=entry.position,
        agents_ahead=agents_ahead,
        estimated_wait_minutes=estimated_wait_minutes(agents_ahead, settings),
        includes=tier_includes(tier, settings),
        message=(
            f"Account queued at position {entry.position}. "
            "You will receive your wallet details once processed."
        ),
    )
