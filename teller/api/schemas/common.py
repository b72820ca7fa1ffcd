"""
Common Pydantic schemas for API responses and requests.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base for payloads exchanged with agents: camelCase on the wire, snake_case accepted."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class ErrorResponse(BaseModel):
    """Error envelope returned for every handled failure."""
    success: bool = False
    error: str
    message: str
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class HealthCheckResponse(BaseModel):
    """Health check response."""
    status: str = "online"
    agent: str
    version: str
    timestamp: datetime = Field(default_factory=_utcnow)
    services: Dict[str, str] = Field(default_factory=dict)
