"""In-process job queues with claim/complete/fail semantics and retry backoff.

Every queue is an independent lock domain. A claim pops the oldest eligible
job and flips it to ``active`` under the queue's lock, so one job is never
active under two workers. Failed attempts go to ``delayed`` with exponential
backoff until ``max_attempts`` is reached, then stay ``failed`` for operators.
"""

import heapq
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from switchboard.config import settings
from switchboard.logging_config import get_logger
from switchboard.services.backoff import BackoffPolicy
from switchboard.services.errors import QueueSaturated, QueueUnknown
from switchboard.services.state_machine import InvalidTransitionError, JobStatus, transition

logger = get_logger("job_queue")


class QueueName(str, Enum):
    MESSAGE_PROCESSING = "message-processing"
    WEBHOOK_PROCESSING = "webhook-processing"
    EMAIL_SENDING = "email-sending"
    ANALYTICS = "analytics"
    NOTIFICATIONS = "notifications"
    DOCUMENT_PROCESSING = "document-processing"
    WHATSAPP_SENDING = "whatsapp-sending"


QUEUE_NAMES = [queue.value for queue in QueueName]

FAILURE_EXHAUSTED = "JobExhausted"
FAILURE_NON_RETRYABLE = "NonRetryable"


class StaleClaimError(Exception):
    """The job was released and claimed again since this worker claimed it."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Stale claim on job: {job_id}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class QueuePolicy:
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=lambda: BackoffPolicy(base=2.0, multiplier=2.0, cap=300.0))
    saturation_threshold: Optional[int] = 10000
    concurrency: int = 5
    retain_completed: int = 100
    retain_failed: int = 500


@dataclass
class Job:
    job_id: str
    queue_name: str
    name: str
    payload: dict
    status: JobStatus
    max_attempts: int
    created_at: datetime
    attempts_made: int = 0
    seq: int = 0
    run_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    failure_code: Optional[str] = None
    result: Any = None
    claim_token: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.job_id,
            "name": self.name,
            "queue": self.queue_name,
            "status": self.status.value,
            "data": self.payload,
            "attemptsMade": self.attempts_made,
            "attempts": self.max_attempts,
            "timestamp": self.created_at.isoformat(),
            "runAt": self.run_at.isoformat() if self.run_at else None,
            "processedOn": self.processed_at.isoformat() if self.processed_at else None,
            "finishedOn": self.finished_at.isoformat() if self.finished_at else None,
            "failedReason": self.failure_reason,
            "failureCode": self.failure_code,
            "returnvalue": self.result,
        }


class _Queue:
    def __init__(self, name: str, policy: QueuePolicy):
        self.name = name
        self.policy = policy
        self.lock = threading.Lock()
        self.paused = False
        self.jobs: dict[str, Job] = {}
        self.waiting: list[tuple[int, str]] = []
        self.delayed: list[tuple[float, int, str]] = []
        self.waiting_ids: set[str] = set()
        self.delayed_ids: set[str] = set()
        self.active_ids: set[str] = set()
        self.completed_ids: OrderedDict[str, None] = OrderedDict()
        self.failed_ids: OrderedDict[str, None] = OrderedDict()
        self.next_seq = 0

    def counts(self) -> dict[str, int]:
        waiting = len(self.waiting_ids)
        active = len(self.active_ids)
        completed = len(self.completed_ids)
        failed = len(self.failed_ids)
        delayed = len(self.delayed_ids)
        return {
            "waiting": waiting,
            "active": active,
            "completed": completed,
            "failed": failed,
            "delayed": delayed,
            "total": waiting + active + completed + failed + delayed,
        }


class JobQueueManager:
    def __init__(
        self,
        policies: Optional[dict[str, QueuePolicy]] = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ):
        policies = policies or {}
        unknown = set(policies) - set(QUEUE_NAMES)
        if unknown:
            raise QueueUnknown(f"Unknown queues in policy: {', '.join(sorted(unknown))}")
        self._clock = clock
        self._queues: dict[str, _Queue] = {}
        for name in QUEUE_NAMES:
            self._queues[name] = _Queue(name, policies.get(name) or QueuePolicy())
            logger.info(f"Queue initialized: {name}")

    # --- producers ---

    def enqueue(
        self,
        queue_name: str,
        payload: Optional[dict] = None,
        *,
        name: Optional[str] = None,
        delay: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        queue = self._queue(queue_name)
        attempts = max_attempts if max_attempts is not None else queue.policy.max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if delay is not None and delay < 0:
            raise ValueError("delay must be >= 0")

        now = self._clock()
        job_id = f"{queue.name}:{uuid.uuid4().hex}"
        with queue.lock:
            threshold = queue.policy.saturation_threshold
            if threshold is not None and len(queue.waiting_ids) >= threshold:
                raise QueueSaturated(f"Queue saturated: {queue.name} ({len(queue.waiting_ids)} waiting)")

            seq = queue.next_seq
            queue.next_seq += 1
            job = Job(
                job_id=job_id,
                queue_name=queue.name,
                name=name or queue.name,
                payload=dict(payload or {}),
                status=JobStatus.WAITING,
                max_attempts=attempts,
                created_at=now,
                seq=seq,
            )
            queue.jobs[job_id] = job
            if delay:
                self._schedule_locked(queue, job, now + timedelta(seconds=delay))
            else:
                heapq.heappush(queue.waiting, (seq, job_id))
                queue.waiting_ids.add(job_id)

        logger.info(
            f"Job added to {queue.name}",
            extra={"context": {"job_id": job_id, "job_name": job.name, "delay": delay or 0}},
        )
        return job_id

    # --- workers ---

    def claim(self, queue_name: str) -> Optional[Job]:
        queue = self._queue(queue_name)
        now = self._clock()
        with queue.lock:
            if queue.paused:
                return None
            self._promote_due_locked(queue, now)
            while queue.waiting:
                _, job_id = heapq.heappop(queue.waiting)
                if job_id not in queue.waiting_ids:
                    continue
                job = queue.jobs[job_id]
                job.status = transition(job.status, JobStatus.ACTIVE)
                job.attempts_made += 1
                job.processed_at = now
                job.run_at = None
                job.claim_token = uuid.uuid4().hex
                queue.waiting_ids.discard(job_id)
                queue.active_ids.add(job_id)
                return replace(job)
        return None

    def complete(self, job_id: str, result: Any = None, *, claim_token: Optional[str] = None) -> Job:
        queue = self._queue_for_job(job_id)
        with queue.lock:
            job = self._job_locked(queue, job_id, claim_token)
            if job.status == JobStatus.COMPLETED:
                return replace(job)
            job.status = transition(job.status, JobStatus.COMPLETED)
            job.finished_at = self._clock()
            job.result = result
            queue.active_ids.discard(job_id)
            queue.completed_ids[job_id] = None
            self._trim_locked(queue, queue.completed_ids, queue.policy.retain_completed)
            snapshot = replace(job)

        logger.debug(f"Job completed in {queue.name}", extra={"context": {"job_id": job_id}})
        return snapshot

    def fail(self, job_id: str, reason: str, *, retryable: bool = True, claim_token: Optional[str] = None) -> Job:
        queue = self._queue_for_job(job_id)
        with queue.lock:
            job = self._job_locked(queue, job_id, claim_token)
            snapshot = self._fail_locked(queue, job, reason, retryable, self._clock())

        if snapshot.status == JobStatus.FAILED:
            logger.error(
                f"Job failed in {queue.name}",
                extra={
                    "context": {
                        "job_id": job_id,
                        "reason": reason,
                        "failure_code": snapshot.failure_code,
                        "attempts_made": snapshot.attempts_made,
                    }
                },
            )
        else:
            logger.warning(
                f"Job retry scheduled in {queue.name}",
                extra={
                    "context": {
                        "job_id": job_id,
                        "reason": reason,
                        "attempts_made": snapshot.attempts_made,
                        "run_at": snapshot.run_at.isoformat() if snapshot.run_at else None,
                    }
                },
            )
        return snapshot

    def release(self, job_id: str, *, claim_token: Optional[str] = None) -> Job:
        """Hand an active job back to the front of its queue without charging the attempt."""
        queue = self._queue_for_job(job_id)
        with queue.lock:
            job = self._job_locked(queue, job_id, claim_token)
            job.status = transition(job.status, JobStatus.WAITING)
            job.attempts_made = max(job.attempts_made - 1, 0)
            job.claim_token = None
            queue.active_ids.discard(job_id)
            queue.waiting_ids.add(job_id)
            heapq.heappush(queue.waiting, (job.seq, job_id))
            snapshot = replace(job)

        logger.info(f"Job released in {queue.name}", extra={"context": {"job_id": job_id}})
        return snapshot

    def release_stalled(self, older_than_seconds: float) -> list[str]:
        """Fail active jobs whose worker has been silent too long; they retry normally."""
        now = self._clock()
        cutoff = now - timedelta(seconds=older_than_seconds)
        released = []
        for queue in self._queues.values():
            with queue.lock:
                for job_id in list(queue.active_ids):
                    job = queue.jobs[job_id]
                    if job.processed_at and job.processed_at <= cutoff:
                        self._fail_locked(queue, job, "stalled", True, now)
                        released.append(job_id)
        if released:
            logger.warning("Stalled jobs released", extra={"context": {"job_ids": released}})
        return released

    # --- observability ---

    def stats(self, queue_name: str) -> dict[str, Any]:
        queue = self._queue(queue_name)
        with queue.lock:
            self._promote_due_locked(queue, self._clock())
            counts = queue.counts()
        return {"queueName": queue.name, **counts}

    def all_stats(self) -> list[dict[str, Any]]:
        return [self.stats(name) for name in QUEUE_NAMES]

    def totals(self) -> dict[str, int]:
        totals = {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0, "total": 0}
        for stat in self.all_stats():
            for key in totals:
                totals[key] += stat[key]
        return totals

    def waiting_count(self, queue_name: str) -> int:
        return self.stats(queue_name)["waiting"]

    def get_job(self, job_id: str) -> Optional[Job]:
        try:
            queue = self._queue_for_job(job_id)
        except QueueUnknown:
            return None
        with queue.lock:
            job = queue.jobs.get(job_id)
            return replace(job) if job else None

    def list_jobs(self, queue_name: str, status: JobStatus = JobStatus.WAITING, limit: int = 50) -> list[Job]:
        queue = self._queue(queue_name)
        status = JobStatus(status)
        with queue.lock:
            self._promote_due_locked(queue, self._clock())
            if status == JobStatus.WAITING:
                ids = [job_id for _, job_id in sorted(queue.waiting) if job_id in queue.waiting_ids]
            elif status == JobStatus.DELAYED:
                ids = [job_id for _, _, job_id in sorted(queue.delayed) if job_id in queue.delayed_ids]
            elif status == JobStatus.ACTIVE:
                ids = sorted(queue.active_ids, key=lambda job_id: queue.jobs[job_id].seq)
            elif status == JobStatus.COMPLETED:
                ids = list(reversed(queue.completed_ids))
            else:
                ids = list(reversed(queue.failed_ids))
            return [replace(queue.jobs[job_id]) for job_id in ids[: max(limit, 0)]]

    def health_check(self, lock_timeout: float = 1.0) -> dict[str, Any]:
        queues = {}
        for name, queue in self._queues.items():
            acquired = queue.lock.acquire(timeout=lock_timeout)
            if acquired:
                queue.lock.release()
            queues[name] = acquired
        return {"healthy": all(queues.values()), "queues": queues}

    def policy(self, queue_name: str) -> QueuePolicy:
        return self._queue(queue_name).policy

    # --- administration ---

    def reset_statistics(self) -> dict[str, Any]:
        results: dict[str, dict[str, int]] = {}
        total_completed = 0
        total_failed = 0
        for name, queue in self._queues.items():
            with queue.lock:
                completed = self._remove_locked(queue, queue.completed_ids, list(queue.completed_ids))
                failed = self._remove_locked(queue, queue.failed_ids, list(queue.failed_ids))
            results[name] = {"completed": completed, "failed": failed}
            total_completed += completed
            total_failed += failed
            logger.info(
                f"Statistics reset for queue: {name}",
                extra={"context": {"completed": completed, "failed": failed}},
            )
        return {"queues": results, "totalCompleted": total_completed, "totalFailed": total_failed}

    def clean(self, queue_name: str, status: JobStatus = JobStatus.COMPLETED, grace_seconds: float = 0) -> list[str]:
        """Remove terminal jobs that finished more than ``grace_seconds`` ago."""
        queue = self._queue(queue_name)
        status = JobStatus(status)
        if status not in (JobStatus.COMPLETED, JobStatus.FAILED):
            raise ValueError("Only completed or failed jobs can be cleaned")
        cutoff = self._clock() - timedelta(seconds=grace_seconds)
        with queue.lock:
            bucket = queue.completed_ids if status == JobStatus.COMPLETED else queue.failed_ids
            ids = [
                job_id
                for job_id in bucket
                if queue.jobs[job_id].finished_at is None or queue.jobs[job_id].finished_at <= cutoff
            ]
            self._remove_locked(queue, bucket, ids)
        logger.info(f"Queue cleaned: {queue.name}", extra={"context": {"type": status.value, "count": len(ids)}})
        return ids

    def drain(self, queue_name: str) -> int:
        """Drop waiting and delayed jobs. Active jobs finish normally."""
        queue = self._queue(queue_name)
        with queue.lock:
            ids = list(queue.waiting_ids) + list(queue.delayed_ids)
            for job_id in ids:
                queue.jobs.pop(job_id, None)
            queue.waiting_ids.clear()
            queue.delayed_ids.clear()
            queue.waiting.clear()
            queue.delayed.clear()
        logger.warning(f"Queue drained: {queue.name}", extra={"context": {"removed": len(ids)}})
        return len(ids)

    def pause(self, queue_name: str) -> None:
        queue = self._queue(queue_name)
        with queue.lock:
            queue.paused = True
        logger.info(f"Queue paused: {queue.name}")

    def resume(self, queue_name: str) -> None:
        queue = self._queue(queue_name)
        with queue.lock:
            queue.paused = False
        logger.info(f"Queue resumed: {queue.name}")

    def is_paused(self, queue_name: str) -> bool:
        queue = self._queue(queue_name)
        with queue.lock:
            return queue.paused

    # --- internals (callers hold queue.lock where noted) ---

    def _queue(self, queue_name: str) -> _Queue:
        name = queue_name.value if isinstance(queue_name, QueueName) else queue_name
        queue = self._queues.get(name)
        if queue is None:
            raise QueueUnknown(f"Queue not found: {queue_name}")
        return queue

    def _queue_for_job(self, job_id: str) -> _Queue:
        queue_name, _, _ = job_id.partition(":")
        return self._queue(queue_name)

    def _job_locked(self, queue: _Queue, job_id: str, claim_token: Optional[str] = None) -> Job:
        job = queue.jobs.get(job_id)
        if job is None:
            raise KeyError(f"Job not found: {job_id}")
        if claim_token is not None and job.claim_token != claim_token:
            raise StaleClaimError(job_id)
        return job

    def _schedule_locked(self, queue: _Queue, job: Job, run_at: datetime) -> None:
        job.status = JobStatus.DELAYED
        job.run_at = run_at
        heapq.heappush(queue.delayed, (run_at.timestamp(), job.seq, job.job_id))
        queue.delayed_ids.add(job.job_id)

    def _promote_due_locked(self, queue: _Queue, now: datetime) -> None:
        now_ts = now.timestamp()
        while queue.delayed and queue.delayed[0][0] <= now_ts:
            _, seq, job_id = heapq.heappop(queue.delayed)
            if job_id not in queue.delayed_ids:
                continue
            job = queue.jobs[job_id]
            job.status = transition(job.status, JobStatus.WAITING)
            queue.delayed_ids.discard(job_id)
            queue.waiting_ids.add(job_id)
            # Original sequence number keeps creation order within the FIFO.
            heapq.heappush(queue.waiting, (seq, job_id))

    def _fail_locked(self, queue: _Queue, job: Job, reason: str, retryable: bool, now: datetime) -> Job:
        if job.status != JobStatus.ACTIVE:
            raise InvalidTransitionError(job.status, JobStatus.FAILED)
        job.failure_reason = reason
        queue.active_ids.discard(job.job_id)

        if retryable and job.attempts_made < job.max_attempts:
            delay = queue.policy.backoff.delay_for(job.attempts_made)
            self._schedule_locked(queue, job, now + timedelta(seconds=delay))
            return replace(job)

        job.status = JobStatus.FAILED
        job.finished_at = now
        job.failure_code = FAILURE_EXHAUSTED if retryable else FAILURE_NON_RETRYABLE
        queue.failed_ids[job.job_id] = None
        self._trim_locked(queue, queue.failed_ids, queue.policy.retain_failed)
        return replace(job)

    def _trim_locked(self, queue: _Queue, bucket: OrderedDict, keep: int) -> None:
        while len(bucket) > max(keep, 0):
            job_id, _ = bucket.popitem(last=False)
            queue.jobs.pop(job_id, None)

    def _remove_locked(self, queue: _Queue, bucket: OrderedDict, ids: list[str]) -> int:
        for job_id in ids:
            bucket.pop(job_id, None)
            queue.jobs.pop(job_id, None)
        return len(ids)


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        logger.warning(f"Queue config not found: {path}")
        return {}
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Queue config must be a mapping: {path}")
    return data


_POLICY_KEYS = {
    "max_attempts",
    "backoff_base_seconds",
    "backoff_ceiling_seconds",
    "saturation_threshold",
    "concurrency",
    "retain_completed",
    "retain_failed",
}


def _policy_from(defaults: dict[str, Any], override: dict[str, Any]) -> QueuePolicy:
    unknown = set(override) - _POLICY_KEYS
    if unknown:
        raise ValueError(f"Unknown queue policy keys: {', '.join(sorted(unknown))}")
    merged = {**defaults, **override}
    return QueuePolicy(
        max_attempts=int(merged["max_attempts"]),
        backoff=BackoffPolicy(
            base=float(merged["backoff_base_seconds"]),
            multiplier=2.0,
            cap=float(merged["backoff_ceiling_seconds"]),
        ),
        saturation_threshold=(
            int(merged["saturation_threshold"]) if merged["saturation_threshold"] is not None else None
        ),
        concurrency=int(merged["concurrency"]),
        retain_completed=int(merged["retain_completed"]),
        retain_failed=int(merged["retain_failed"]),
    )


def load_queue_policies(path: Optional[str] = None) -> dict[str, QueuePolicy]:
    """Global defaults from settings, with per-queue overrides from a YAML mapping."""
    defaults = {
        "max_attempts": settings.job_max_attempts,
        "backoff_base_seconds": settings.job_backoff_base_seconds,
        "backoff_ceiling_seconds": settings.job_backoff_ceiling_seconds,
        "saturation_threshold": settings.queue_saturation_threshold,
        "concurrency": settings.worker_concurrency,
        "retain_completed": settings.retain_completed_jobs,
        "retain_failed": settings.retain_failed_jobs,
    }
    overrides = _load_yaml(Path(path)) if path else {}
    unknown = set(overrides) - set(QUEUE_NAMES)
    if unknown:
        raise QueueUnknown(f"Unknown queues in config: {', '.join(sorted(unknown))}")
    return {name: _policy_from(defaults, overrides.get(name) or {}) for name in QUEUE_NAMES}


_job_queue_manager: Optional[JobQueueManager] = None


def get_job_queue_manager() -> JobQueueManager:
    global _job_queue_manager
    if _job_queue_manager is None:
        _job_queue_manager = JobQueueManager(load_queue_policies(settings.queue_config_path))
    return _job_queue_manager
