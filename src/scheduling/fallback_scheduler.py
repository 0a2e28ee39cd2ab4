"""
In-process fallback scheduler used when Redis is unreachable at startup.

``FallbackScheduler`` keeps every pending job in a dict and arms one
``loop.call_later`` timer per job. Everything runs on a single asyncio
event loop, so the timer callback and ``cancel`` never interleave
mid-statement and the dict needs no lock. If this is ever driven from
multiple threads, the presence check in :meth:`_fire` must become an
explicit lock.

Nothing here survives a restart, and failed publishes are not retried:
the entry is kept with ``status=FAILED`` so the owner can see the error.
"""

import asyncio
import itertools
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from src.exceptions import InvalidJobStateError, JobNotFoundError
from src.scheduling.backend import PublishFn
from src.scheduling.models import (
    BackendType,
    CancelResult,
    JobStatus,
    QueueStats,
    ScheduledJob,
    ScheduleResult,
)
from src.utils import utc_now

logger = logging.getLogger(__name__)


class FallbackScheduler:
    """Memory-only scheduler backend.

    Args:
        publish: Coroutine function ``publish(job_id, post_data, owner_id)``
            invoked when a job becomes due.
    """

    JOB_ID_PREFIX: str = "memory-job-"

    backend_type = BackendType.IN_MEMORY

    def __init__(self, publish: PublishFn) -> None:
        self._publish = publish
        self._jobs: Dict[str, ScheduledJob] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._counter = itertools.count(1)

    async def start(self) -> None:
        logger.info("[FALLBACK] In-memory scheduling active (jobs are lost on restart)")

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
        job_id = f"{self.JOB_ID_PREFIX}{next(self._counter)}"
        job = ScheduledJob(
            job_id=job_id,
            post_data=dict(post_data),
            owner_id=owner_id,
            scheduled_time=scheduled_time,
            status=JobStatus.SCHEDULED,
            created_at=utc_now(),
        )
        self._jobs[job_id] = job

        loop = asyncio.get_running_loop()
        self._timers[job_id] = loop.call_later(delay_seconds, self._on_timer, job_id)

        logger.info(
            "[FALLBACK] Post scheduled in-memory: job=%s user=%s at=%s (in %ds)",
            job_id,
            owner_id,
            scheduled_time.isoformat(),
            round(delay_seconds),
        )
        return ScheduleResult(
            job_id=job_id,
            scheduled_time=scheduled_time,
            status=JobStatus.SCHEDULED,
            backend_type=self.backend_type,
        )

    async def cancel(self, job_id: str) -> CancelResult:
        """Remove a pending (or failed) job before its timer fires.

        Raises:
            JobNotFoundError: No such entry (never existed, already published
                or already cancelled).
            InvalidJobStateError: The job is being published right now.
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status is JobStatus.PROCESSING:
            raise InvalidJobStateError(job_id, job.status.value)

        del self._jobs[job_id]
        timer = self._timers.pop(job_id, None)
        if timer is not None:
            timer.cancel()

        logger.info("[FALLBACK] In-memory scheduled post cancelled: job=%s", job_id)
        return CancelResult(job_id=job_id)

    async def list_for_owner(self, owner_id: Any) -> List[ScheduledJob]:
        return [job for job in self._jobs.values() if job.owner_id == owner_id]

    async def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        return self._jobs.get(job_id)

    async def stats(self) -> QueueStats:
        jobs = list(self._jobs.values())
        return QueueStats(
            waiting=0,
            active=sum(1 for j in jobs if j.status is JobStatus.PROCESSING),
            completed=0,
            failed=sum(1 for j in jobs if j.status is JobStatus.FAILED),
            delayed=sum(1 for j in jobs if j.status is JobStatus.SCHEDULED),
            backend_type=self.backend_type,
        )

    async def close(self) -> None:
        """Disarm all timers and cancel in-flight publishes."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        if self._jobs:
            logger.warning(
                "[FALLBACK] Shutting down with %d in-memory jobs (they will be lost)",
                len(self._jobs),
            )

    # ================================================================
    # DUE-TIME EXECUTION
    # ================================================================

    def _on_timer(self, job_id: str) -> None:
        self._timers.pop(job_id, None)
        task = asyncio.ensure_future(self._fire(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fire(self, job_id: str) -> None:
        """Publish a due job exactly once.

        The entry may have been cancelled between the timer firing and
        this coroutine running, so its presence is checked first.
        """
        job = self._jobs.get(job_id)
        if job is None or job.status is not JobStatus.SCHEDULED:
            logger.debug("[FALLBACK] Job %s no longer pending, skipping", job_id)
            return

        job.status = JobStatus.PROCESSING
        job.attempts_made += 1
        logger.info(
            "[FALLBACK] Processing in-memory scheduled post: job=%s user=%s",
            job_id,
            job.owner_id,
        )

        try:
            await self._publish(job_id, job.post_data, job.owner_id)
        except Exception as exc:
            job.status = JobStatus.FAILED
            job.error = str(exc) or exc.__class__.__name__
            logger.error(
                "[FALLBACK] Failed to create in-memory scheduled post %s: %s",
                job_id,
                job.error,
            )
            return

        self._jobs.pop(job_id, None)
        logger.info("[FALLBACK] In-memory scheduled post created: job=%s", job_id)


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "FallbackScheduler",
]
