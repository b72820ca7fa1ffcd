"""
API dependencies for FastAPI endpoints.
"""

from typing import AsyncGenerator

from fastapi import Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

import structlog

from teller.core.config import Settings
from teller.core.database import get_async_session
from teller.core.exceptions import ValidationError
from teller.models.queue import QueueTier, ACCOUNT_TIERS
from teller.services.queue_service import PriorityQueue, get_priority_queue


logger = structlog.get_logger(__name__)


async def get_database() -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with get_async_session() as session:
        yield session


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_queue(request: Request) -> PriorityQueue:
    """The queue shared with the background worker when it runs in-process."""
    queue = getattr(request.app.state, "queue", None)
    return queue or get_priority_queue()


async def validate_account_tier(
    tier: str = Query("regular", description="regular, premium or vip")
) -> QueueTier:
    """Validate the tier query parameter of /account/open."""
    allowed = [t.value for t in ACCOUNT_TIERS]
    if tier not in allowed:
        logger.info("Invalid tier requested", tier=tier)
        raise ValidationError(
            'Invalid tier. Use "regular", "premium", or "vip".',
            details={"tier": tier, "allowed": allowed},
        )
    return QueueTier(tier)
