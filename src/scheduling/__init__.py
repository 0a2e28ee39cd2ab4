"""Scheduling subsystem: delayed post publishing over Redis with an in-memory fallback."""

from src.scheduling.durable_scheduler import DurableScheduler
from src.scheduling.fallback_scheduler import FallbackScheduler
from src.scheduling.handlers import ScheduledPostHandlers
from src.scheduling.models import (
    BackendType,
    CancelResult,
    JobStatus,
    QueueStats,
    ScheduledJob,
    ScheduleResult,
)
from src.scheduling.redis_queue import DelayedJobQueue, QueuedJob
from src.scheduling.service import ScheduledPostService

__all__ = [
    "BackendType",
    "CancelResult",
    "JobStatus",
    "QueueStats",
    "ScheduledJob",
    "ScheduleResult",
    "DelayedJobQueue",
    "QueuedJob",
    "DurableScheduler",
    "FallbackScheduler",
    "ScheduledPostService",
    "ScheduledPostHandlers",
]
