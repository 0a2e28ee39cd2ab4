"""
Scheduled post service: single entry point for delayed post publishing.

``ScheduledPostService`` hides which backend is in use. At process start
it probes Redis once; if a throwaway job can be enqueued it binds the
durable :class:`~src.scheduling.durable_scheduler.DurableScheduler`,
otherwise the in-memory
:class:`~src.scheduling.fallback_scheduler.FallbackScheduler`. The choice
is never revisited while the process runs.

Create exactly one instance per process, call :meth:`start` at startup and
:meth:`close` at shutdown::

    service = ScheduledPostService(post_creator=db)
    service.start()
    result = await service.schedule({"content": "hi"}, owner_id=7,
                                    scheduled_time=utc_now() + timedelta(hours=1))
"""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

import redis.asyncio as aioredis

from src.config import SchedulerSettings, get_settings
from src.database import PostCreator
from src.exceptions import (
    BackendUnavailableError,
    InvalidScheduleError,
    PublishFailureError,
    ValidationError,
)
from src.scheduling.backend import SchedulerBackend
from src.scheduling.durable_scheduler import DurableScheduler
from src.scheduling.fallback_scheduler import FallbackScheduler
from src.scheduling.models import (
    BackendType,
    CancelResult,
    QueueStats,
    ScheduledJob,
    ScheduleResult,
    validate_scheduled_time,
)
from src.scheduling.redis_queue import DelayedJobQueue
from src.utils import utc_now

logger = logging.getLogger(__name__)

RedisFactory = Callable[[], "aioredis.Redis"]


class ScheduledPostService:
    """Facade over the Redis and in-memory scheduler backends.

    Args:
        post_creator: Collaborator whose ``create_post`` publishes a post.
        settings: Scheduler settings; defaults to :func:`get_settings`.
        redis_factory: Zero-argument callable returning a new
            ``redis.asyncio`` client. Called once for the probe and once
            for the queue. Defaults to a client for
            ``settings.connection_url``.
    """

    def __init__(
        self,
        post_creator: PostCreator,
        settings: Optional[SchedulerSettings] = None,
        redis_factory: Optional[RedisFactory] = None,
    ) -> None:
        self.post_creator = post_creator
        self.settings = settings or get_settings()
        self._redis_factory = redis_factory or self._default_redis_factory
        self._backend: Optional[SchedulerBackend] = None
        self._init_task: Optional[asyncio.Task] = None

    def _default_redis_factory(self) -> "aioredis.Redis":
        return aioredis.from_url(
            self.settings.connection_url,
            decode_responses=True,
            socket_connect_timeout=self.settings.probe_timeout_seconds,
        )

    # ================================================================
    # LIFECYCLE
    # ================================================================

    def start(self) -> "asyncio.Task":
        """Begin backend selection in the background and return immediately."""
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._bind_backend())
        return self._init_task

    async def initialize(self) -> SchedulerBackend:
        """Wait for (and if needed trigger) the one-time backend selection."""
        return await self.start()

    @property
    def backend_type(self) -> Optional[BackendType]:
        return self._backend.backend_type if self._backend is not None else None

    async def close(self) -> None:
        """Stop the bound backend and release its resources."""
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
            try:
                await self._init_task
            except asyncio.CancelledError:
                pass
        if self._backend is not None:
            await self._backend.close()
            logger.info("[SCHEDULER] %s backend closed", self._backend.backend_type.value)

    async def _bind_backend(self) -> SchedulerBackend:
        backend: SchedulerBackend
        try:
            await self._probe_redis()
            queue = DelayedJobQueue(
                self._redis_factory(),
                name=self.settings.queue_name,
                prefix=self.settings.key_prefix,
                remove_on_complete=self.settings.remove_on_complete,
                remove_on_fail=self.settings.remove_on_fail,
                attempts=self.settings.max_attempts,
                backoff_delay_ms=self.settings.backoff_delay_ms,
                poll_interval=self.settings.poll_interval_seconds,
            )
            backend = DurableScheduler(queue, self.publish)
        except BackendUnavailableError as exc:
            logger.warning("[SCHEDULER] %s; using in-memory scheduling", exc)
            backend = FallbackScheduler(self.publish)

        await backend.start()
        self._backend = backend
        logger.info("[SCHEDULER] Scheduled posts backend: %s", backend.backend_type.value)
        return backend

    async def _probe_redis(self) -> None:
        """Raise ``BackendUnavailableError`` unless Redis accepts a probe job."""
        try:
            client = self._redis_factory()
        except Exception as exc:
            raise BackendUnavailableError(f"Redis client could not be created: {exc}") from exc

        available = await DelayedJobQueue.probe(
            client,
            prefix=self.settings.key_prefix,
            timeout=self.settings.probe_timeout_seconds,
        )
        if not available:
            raise BackendUnavailableError(
                f"Redis not available at {self.settings.redis_host}:{self.settings.redis_port}"
            )

    # ================================================================
    # OPERATIONS
    # ================================================================

    async def schedule(
        self,
        post_data: Dict[str, Any],
        owner_id: Any,
        scheduled_time: Union[str, datetime, None],
    ) -> ScheduleResult:
        """Accept a post for publication at ``scheduled_time``.

        Returns as soon as the job is stored; publishing happens later.

        Raises:
            InvalidScheduleError: Time missing, not in the future, or more
                than ``max_schedule_days`` ahead.
            ValidationError: ``post_data`` is not a JSON-serializable mapping.
        """
        if not isinstance(post_data, dict):
            raise ValidationError("post_data must be a mapping")
        try:
            json.dumps(post_data)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"post_data must be JSON-serializable: {exc}") from exc

        scheduled_at = validate_scheduled_time(
            scheduled_time,
            max_horizon=timedelta(days=self.settings.max_schedule_days),
        )
        backend = await self.initialize()

        # Backend selection may have taken a moment; re-check the delay
        delay_seconds = (scheduled_at - utc_now()).total_seconds()
        if delay_seconds <= 0:
            raise InvalidScheduleError("Scheduled time must be in the future")

        return await backend.schedule(post_data, owner_id, scheduled_at, delay_seconds)

    async def cancel(self, job_id: str) -> CancelResult:
        """Cancel a job that has not started publishing.

        Raises:
            JobNotFoundError: Unknown id or already executed.
            InvalidJobStateError: The job is being published right now.
        """
        backend = await self.initialize()
        return await backend.cancel(job_id)

    async def list_for_owner(self, owner_id: Any) -> List[ScheduledJob]:
        """Jobs of ``owner_id`` not yet executed, earliest first."""
        backend = await self.initialize()
        jobs = await backend.list_for_owner(owner_id)
        return sorted(jobs, key=lambda job: job.scheduled_time)

    async def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        """Look up one job in the bound backend; ``None`` when unknown."""
        backend = await self.initialize()
        return await backend.get_job(job_id)

    async def stats(self) -> QueueStats:
        backend = await self.initialize()
        return await backend.stats()

    # ================================================================
    # PUBLISHING
    # ================================================================

    async def publish(self, job_id: str, post_data: Dict[str, Any], owner_id: Any) -> Any:
        """Create the post for a due job; bound as the worker of both backends.

        Raises:
            PublishFailureError: The post collaborator failed.
        """
        try:
            post = await self.post_creator.create_post({**post_data, "user_id": owner_id})
        except Exception as exc:
            logger.error(
                "[SCHEDULER] Failed to create scheduled post %s for user %s: %s",
                job_id,
                owner_id,
                exc,
            )
            raise PublishFailureError(job_id, owner_id, exc) from exc

        logger.info(
            "[SCHEDULER] Scheduled post %s published for user %s (post=%s)",
            job_id,
            owner_id,
            post.get("id") if isinstance(post, dict) else post,
        )
        return post


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "RedisFactory",
    "ScheduledPostService",
]
