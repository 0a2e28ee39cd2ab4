"""
Durable scheduler backend: scheduled posts as delayed jobs in Redis.

Adapts :class:`~src.scheduling.redis_queue.DelayedJobQueue` to the
uniform scheduler contract. Retries, history retention and crash
recovery are the queue's business; this class only translates between
``ScheduledJob`` records and queue payloads.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.exceptions import PublishFailureError
from src.scheduling.backend import PublishFn
from src.scheduling.models import (
    BackendType,
    CancelResult,
    JobStatus,
    QueueStats,
    ScheduledJob,
    ScheduleResult,
)
from src.scheduling.redis_queue import DelayedJobQueue, QueuedJob
from src.utils import from_epoch_ms, parse_datetime, to_epoch_ms, utc_now

logger = logging.getLogger(__name__)


class DurableScheduler:
    """Scheduler backend that persists jobs in a Redis delayed queue.

    Args:
        queue: The delayed job queue (owns the Redis connection).
        publish: Coroutine function ``publish(job_id, post_data, owner_id)``
            bound as the queue worker.
    """

    JOB_NAME: str = "createPost"
    JOB_ID_PREFIX: str = "scheduled-post-"

    # Queue states that still count as "not yet executed"
    PENDING_STATES = ("delayed", "waiting", "active")

    backend_type = BackendType.REDIS

    def __init__(self, queue: DelayedJobQueue, publish: PublishFn) -> None:
        self.queue = queue
        self._publish = publish
        self._last_id_ms: int = 0

    async def start(self) -> None:
        self.queue.process(self._handle_job)
        logger.info("[SCHEDULER] Redis queue '%s' worker bound to publisher", self.queue.name)

    # ================================================================
    # CONTRACT
    # ================================================================

    async def schedule(
        self,
        post_data: Dict[str, Any],
        owner_id: Any,
        scheduled_time: datetime,
        delay_seconds: float,
    ) -> ScheduleResult:
        # owner + enqueue time keeps accidental double submits apart in logs;
        # the millisecond part never repeats within this process
        id_ms = max(to_epoch_ms(utc_now()), self._last_id_ms + 1)
        self._last_id_ms = id_ms
        job_id = f"{self.JOB_ID_PREFIX}{owner_id}-{id_ms}"
        delay_ms = max(1, int(delay_seconds * 1000))

        job = await self.queue.add(
            self.JOB_NAME,
            {
                "post_data": dict(post_data),
                "owner_id": owner_id,
                "scheduled_time": scheduled_time.isoformat(),
            },
            delay_ms=delay_ms,
            job_id=job_id,
        )

        logger.info(
            "[SCHEDULER] Post scheduled with Redis: job=%s user=%s at=%s (in %ds)",
            job.id,
            owner_id,
            scheduled_time.isoformat(),
            round(delay_seconds),
        )
        return ScheduleResult(
            job_id=job.id,
            scheduled_time=scheduled_time,
            status=JobStatus.SCHEDULED,
            backend_type=self.backend_type,
        )

    async def cancel(self, job_id: str) -> CancelResult:
        await self.queue.remove(job_id)
        logger.info("[SCHEDULER] Redis scheduled post cancelled: job=%s", job_id)
        return CancelResult(job_id=job_id)

    async def list_for_owner(self, owner_id: Any) -> List[ScheduledJob]:
        # No owner index in Redis: list every pending job, filter here
        jobs = await self.queue.get_jobs(self.PENDING_STATES)
        return [
            self._to_scheduled_job(job)
            for job in jobs
            if job.data.get("owner_id") == owner_id
        ]

    async def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        job = await self.queue.get_job(job_id)
        return self._to_scheduled_job(job) if job is not None else None

    async def stats(self) -> QueueStats:
        counts = await self.queue.get_job_counts()
        return QueueStats(
            waiting=counts["waiting"],
            active=counts["active"],
            completed=counts["completed"],
            failed=counts["failed"],
            delayed=counts["delayed"],
            backend_type=self.backend_type,
        )

    async def close(self) -> None:
        await self.queue.close()

    # ================================================================
    # WORKER
    # ================================================================

    async def _handle_job(self, job: QueuedJob) -> Dict[str, Any]:
        """Publish one due job; exceptions make the queue retry or fail it."""
        owner_id = job.data.get("owner_id")
        logger.info(
            "[SCHEDULER] Processing scheduled post: job=%s user=%s attempt=%d/%d",
            job.id,
            owner_id,
            job.attempts_made + 1,
            job.max_attempts,
        )
        try:
            post = await self._publish(job.id, job.data.get("post_data", {}), owner_id)
        except PublishFailureError:
            raise
        except Exception as exc:
            raise PublishFailureError(job.id, owner_id, exc) from exc

        post_id = post.get("id") if isinstance(post, dict) else getattr(post, "id", None)
        return {
            "success": True,
            "postId": post_id,
            "message": "Scheduled post published successfully",
        }

    # ================================================================
    # INTERNAL HELPERS
    # ================================================================

    @staticmethod
    def _to_scheduled_job(job: QueuedJob) -> ScheduledJob:
        """Convert a queue record to a ``ScheduledJob``.

        The requested publish time is stored in the payload; enqueue time
        plus delay is only used for records written without it.
        """
        scheduled_time = parse_datetime(job.data.get("scheduled_time"))
        if scheduled_time is None:
            scheduled_time = from_epoch_ms(job.timestamp_ms + job.delay_ms)

        if job.state == "active":
            status = JobStatus.PROCESSING
        elif job.state == "completed":
            status = JobStatus.COMPLETED
        elif job.state == "failed":
            status = JobStatus.FAILED
        else:
            status = JobStatus.SCHEDULED

        return ScheduledJob(
            job_id=job.id,
            post_data=job.data.get("post_data", {}),
            owner_id=job.data.get("owner_id"),
            scheduled_time=scheduled_time,
            status=status,
            created_at=from_epoch_ms(job.timestamp_ms),
            error=job.failed_reason if status is JobStatus.FAILED else None,
            attempts_made=job.attempts_made,
        )


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "DurableScheduler",
]
