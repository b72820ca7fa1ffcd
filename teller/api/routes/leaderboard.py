"""
Referral leaderboard endpoint.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from teller.core.config import Settings
from teller.services.referral_service import ReferralLedger
from teller.api.dependencies import get_app_settings, get_database
from teller.api.schemas.accounts import LeaderboardItem, LeaderboardResponse

router = APIRouter(tags=["Referrals"])


@router.get("/leaderboard", response_model=LeaderboardResponse)
async def get_leaderboard(
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_database),
    settings: Settings = Depends(get_app_settings),
):
    """Agents ranked by referral points."""
    ledger = ReferralLedger(db, settings)
    entries = await ledger.leaderboard(limit)

    return LeaderboardResponse(entries=[
        LeaderboardItem(rank=rank, agent_id=entry.agent_id, total_points=entry.total_points)
        for rank, entry in enumerate(entries, start=1)
    ])
