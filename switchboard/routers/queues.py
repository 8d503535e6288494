"""Operator endpoints over the job queues."""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from switchboard.config import settings
from switchboard.logging_config import get_logger
from switchboard.schemas.queue import (
    QueueActionResponse,
    QueueCleanResponse,
    QueueCounts,
    QueueDrainResponse,
    QueueJob,
    QueueJobsResponse,
    QueueStatsResponse,
    ResetStatisticsResponse,
)
from switchboard.services.errors import QueueUnknown
from switchboard.services.job_queue import QUEUE_NAMES, JobQueueManager, get_job_queue_manager
from switchboard.services.state_machine import JobStatus

logger = get_logger("queues_router")


def require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    expected = settings.admin_token
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="ADMIN_TOKEN not configured",
        )
    if not x_admin_token or x_admin_token != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


router = APIRouter(prefix="/admin/queues", tags=["admin"], dependencies=[Depends(require_admin_token)])


def _invalid_queue(queue_name: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={
            "error": f"Invalid queue name: {queue_name}",
            "code": QueueUnknown.code,
            "validQueues": QUEUE_NAMES,
        },
    )


@router.get("/stats", response_model=QueueStatsResponse)
def queue_stats(manager: JobQueueManager = Depends(get_job_queue_manager)):
    health = manager.health_check()
    stats = {}
    for entry in manager.all_stats():
        stats[entry["queueName"]] = QueueCounts(**{key: entry[key] for key in QueueCounts.model_fields})
    return QueueStatsResponse(
        healthy=health["healthy"],
        queues=health["queues"],
        stats=stats,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


@router.get("/{queue_name}/jobs", response_model=QueueJobsResponse)
def queue_jobs(
    queue_name: str,
    job_status: str = Query(default="waiting", alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    manager: JobQueueManager = Depends(get_job_queue_manager),
):
    try:
        parsed_status = JobStatus(job_status)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": f"Invalid status: {job_status}", "code": "InvalidStatus"},
        )
    try:
        jobs = manager.list_jobs(queue_name, parsed_status, limit)
    except QueueUnknown:
        raise _invalid_queue(queue_name)

    items = [QueueJob(**job.to_dict()) for job in jobs]
    return QueueJobsResponse(queueName=queue_name, status=parsed_status.value, jobs=items, count=len(items))


@router.post("/reset-statistics", response_model=ResetStatisticsResponse)
def reset_statistics(manager: JobQueueManager = Depends(get_job_queue_manager)):
    data = manager.reset_statistics()
    logger.info(
        "Queue statistics reset",
        extra={"context": {"completed": data["totalCompleted"], "failed": data["totalFailed"]}},
    )
    return ResetStatisticsResponse(
        message=(
            f"Statistics reset: removed {data['totalCompleted']} completed "
            f"and {data['totalFailed']} failed jobs"
        ),
        data=data,
    )


@router.post("/{queue_name}/pause", response_model=QueueActionResponse)
def pause_queue(queue_name: str, manager: JobQueueManager = Depends(get_job_queue_manager)):
    try:
        manager.pause(queue_name)
    except QueueUnknown:
        raise _invalid_queue(queue_name)
    return QueueActionResponse(queueName=queue_name, paused=True)


@router.post("/{queue_name}/resume", response_model=QueueActionResponse)
def resume_queue(queue_name: str, manager: JobQueueManager = Depends(get_job_queue_manager)):
    try:
        manager.resume(queue_name)
    except QueueUnknown:
        raise _invalid_queue(queue_name)
    return QueueActionResponse(queueName=queue_name, paused=False)


@router.post("/{queue_name}/drain", response_model=QueueDrainResponse)
def drain_queue(queue_name: str, manager: JobQueueManager = Depends(get_job_queue_manager)):
    try:
        removed = manager.drain(queue_name)
    except QueueUnknown:
        raise _invalid_queue(queue_name)
    return QueueDrainResponse(queueName=queue_name, removed=removed)


@router.post("/{queue_name}/clean", response_model=QueueCleanResponse)
def clean_queue(
    queue_name: str,
    job_status: str = Query(default="completed", alias="status"),
    grace: float = Query(default=0, ge=0),
    manager: JobQueueManager = Depends(get_job_queue_manager),
):
    if job_status not in (JobStatus.COMPLETED.value, JobStatus.FAILED.value):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": f"Only completed or failed jobs can be cleaned: {job_status}", "code": "InvalidStatus"},
        )
    try:
        removed = manager.clean(queue_name, JobStatus(job_status), grace)
    except QueueUnknown:
        raise _invalid_queue(queue_name)
    return QueueCleanResponse(queueName=queue_name, status=job_status, removed=removed, count=len(removed))
