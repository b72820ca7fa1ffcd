"""
Schemas for account opening, gas bundles and queue status.
"""

from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, Field, field_validator

from .common import CamelModel


class PaidRequest(CamelModel):
    """Body of a paid intake call. paymentRef is the USDC transaction hash."""

    agent_id: Optional[str] = Field(
        default=None,
        max_length=64,
        validation_alias=AliasChoices("agentId", "agent_id"),
    )
    payment_ref: Optional[str] = Field(
        default=None,
        max_length=100,
        validation_alias=AliasChoices("paymentRef", "payment_ref", "payment_tx"),
    )
    referral_code: Optional[str] = Field(
        default=None,
        max_length=20,
        validation_alias=AliasChoices("referralCode", "referral_code"),
    )

    @field_validator("agent_id", "payment_ref", "referral_code")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    @field_validator("agent_id")
    @classmethod
    def normalize_address(cls, v: Optional[str]) -> Optional[str]:
        # Ingested payments key agents by lowercase sender address
        if v and v.lower().startswith("0x"):
            return v.lower()
        return v


class QueuedResponse(CamelModel):
    """202 body for an accepted account request."""
    status: str = "queued"
    tier: str
    position: int
    agents_ahead: int
    estimated_wait_minutes: float
    includes: Dict[str, Any] = Field(default_factory=dict)
    message: str


class GasBundleQueuedResponse(QueuedResponse):
    """202 body for an accepted gas bundle request."""
    type: str = "gas_bundle"
    chains: List[str]
    per_chain: str


class AgentEntry(CamelModel):
    payment_ref: str
    tier: str
    status: str
    position: int
    agents_ahead: Optional[int] = None
    failure_reason: Optional[str] = None


class QueueStatusResponse(CamelModel):
    pending_count: int
    processing_count: int
    completed_count: int
    failed_count: int
    cooldown_seconds: float
    estimated_wait_minutes: float
    pricing: Dict[str, str]
    supported_chains: List[str]
    agent_entries: Optional[List[AgentEntry]] = None


class LeaderboardItem(CamelModel):
    rank: int
    agent_id: str
    total_points: int


class LeaderboardResponse(CamelModel):
    entries: List[LeaderboardItem]
