from .common import CamelModel, ErrorResponse, HealthCheckResponse
from .accounts import (
    PaidRequest, QueuedResponse, GasBundleQueuedResponse,
    AgentEntry, QueueStatusResponse, LeaderboardItem, LeaderboardResponse
)

__all__ = [
    "CamelModel",
    "ErrorResponse",
    "HealthCheckResponse",
    "PaidRequest",
    "QueuedResponse",
    "GasBundleQueuedResponse",
    "AgentEntry",
    "QueueStatusResponse",
    "LeaderboardItem",
    "LeaderboardResponse",
]
