from switchboard.schemas.auth import AuthTicketRequest, AuthTicketResponse
from switchboard.schemas.queue import (
    QueueActionResponse,
    QueueCounts,
    QueueJob,
    QueueJobsResponse,
    QueueStatsResponse,
    ResetStatisticsResponse,
)
from switchboard.schemas.webhook import WebhookAcceptedResponse

__all__ = [
    "AuthTicketRequest",
    "AuthTicketResponse",
    "QueueActionResponse",
    "QueueCounts",
    "QueueJob",
    "QueueJobsResponse",
    "QueueStatsResponse",
    "ResetStatisticsResponse",
    "WebhookAcceptedResponse",
]
