from typing import Any, Optional

from pydantic import BaseModel


class QueueCounts(BaseModel):
    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    total: int


class QueueStatsResponse(BaseModel):
    success: bool = True
    healthy: bool
    queues: dict[str, bool]
    stats: dict[str, QueueCounts]
    timestamp: str


class QueueJob(BaseModel):
    id: str
    name: str
    data: dict
    attemptsMade: int
    attempts: int
    timestamp: str
    runAt: Optional[str] = None
    processedOn: Optional[str] = None
    finishedOn: Optional[str] = None
    failedReason: Optional[str] = None
    failureCode: Optional[str] = None
    returnvalue: Any = None


class QueueJobsResponse(BaseModel):
    success: bool = True
    queueName: str
    status: str
    jobs: list[QueueJob]
    count: int


class ResetStatisticsResponse(BaseModel):
    success: bool = True
    message: str
    data: dict


class QueueActionResponse(BaseModel):
    success: bool = True
    queueName: str
    paused: bool


class QueueDrainResponse(BaseModel):
    success: bool = True
    queueName: str
    removed: int


class QueueCleanResponse(BaseModel):
    success: bool = True
    queueName: str
    status: str
    removed: list[str]
    count: int
