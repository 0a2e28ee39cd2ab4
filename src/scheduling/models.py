"""
Scheduling data models: JobStatus, BackendType, ScheduledJob and results.

Defines the core data structures shared by both scheduler backends:
- ``JobStatus``: Lifecycle status of a scheduled post job.
- ``BackendType``: Which backend the service bound at startup.
- ``ScheduledJob``: A pending "create post" action for a user.
- ``ScheduleResult`` / ``CancelResult`` / ``QueueStats``: operation results.
- ``validate_scheduled_time()``: Boundary check for requested publish times.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Union

from src.exceptions import InvalidScheduleError
from src.utils import parse_datetime, utc_now

# Maximum distance into the future a post may be scheduled
MAX_SCHEDULE_HORIZON = timedelta(days=365)


# =============================================================================
# ENUMS
# =============================================================================


class JobStatus(Enum):
    """Lifecycle status of a scheduled post job.

    Transitions:
        SCHEDULED -> PROCESSING -> COMPLETED
                                -> FAILED
        SCHEDULED -> CANCELLED
    """

    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class BackendType(Enum):
    """Scheduler backend bound for the lifetime of the process."""

    REDIS = "redis"
    IN_MEMORY = "in-memory"


# =============================================================================
# SCHEDULED JOB
# =============================================================================


@dataclass
class ScheduledJob:
    """A post that will be created on behalf of ``owner_id`` at ``scheduled_time``.

    Attributes:
        job_id: Backend-unique identifier.
        post_data: Payload passed to post creation (``content`` plus
            optional ``media_url`` / ``comments_enabled``).
        owner_id: User who scheduled the post; callers use it for
            authorization on list and cancel.
        scheduled_time: When the post becomes due (timezone-aware UTC).
        status: Current lifecycle status.
        created_at: When the job was scheduled.
        error: Failure detail, set only when ``status`` is ``FAILED``.
        attempts_made: Publish attempts consumed so far.
    """

    job_id: str
    post_data: Dict[str, Any]
    owner_id: Any
    scheduled_time: datetime

    status: JobStatus = JobStatus.SCHEDULED
    created_at: datetime = field(default_factory=utc_now)
    error: Optional[str] = None
    attempts_made: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation used by the request handlers."""
        return {
            "jobId": self.job_id,
            "postData": dict(self.post_data),
            "ownerId": self.owner_id,
            "scheduledTime": self.scheduled_time.isoformat(),
            "status": self.status.value,
            "createdAt": self.created_at.isoformat(),
            "error": self.error,
        }


# =============================================================================
# OPERATION RESULTS
# =============================================================================


@dataclass
class ScheduleResult:
    """Returned by ``schedule``; the job has been accepted, not executed."""

    job_id: str
    scheduled_time: datetime
    status: JobStatus
    backend_type: BackendType


@dataclass
class CancelResult:
    """Returned by a successful ``cancel``."""

    job_id: str
    status: JobStatus = JobStatus.CANCELLED


@dataclass
class QueueStats:
    """Job counts for the diagnostics view.

    Meaning depends on the backend: the Redis queue reports its own state
    lists (including bounded completed/failed history). The in-memory
    fallback only counts entries it still holds: ``delayed`` are jobs
    waiting on a timer, ``failed`` are retained failures, and ``completed``
    is always 0 because published entries are dropped. Its ``total`` is
    therefore the number of held entries.
    """

    waiting: int
    active: int
    completed: int
    failed: int
    delayed: int
    backend_type: BackendType

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "total": self.total,
            "type": self.backend_type.value,
        }


# =============================================================================
# VALIDATION
# =============================================================================


def validate_scheduled_time(
    scheduled_time: Union[str, datetime, None],
    now: Optional[datetime] = None,
    max_horizon: timedelta = MAX_SCHEDULE_HORIZON,
) -> datetime:
    """Normalize a requested publish time and check it is schedulable.

    Args:
        scheduled_time: ISO-8601 string or datetime (naive means UTC).
        now: Reference time; defaults to ``utc_now()``.
        max_horizon: How far ahead a post may be scheduled.

    Returns:
        The scheduled time as a timezone-aware UTC datetime.

    Raises:
        InvalidScheduleError: If the time is missing, unparseable, not
            strictly in the future, or beyond ``max_horizon``.
    """
    try:
        parsed = parse_datetime(scheduled_time)
    except (TypeError, ValueError) as exc:
        raise InvalidScheduleError(f"Invalid scheduled time: {scheduled_time!r}") from exc

    if parsed is None:
        raise InvalidScheduleError("Scheduled time is required")

    now = now or utc_now()
    if parsed <= now:
        raise InvalidScheduleError("Scheduled time must be in the future")
    if parsed > now + max_horizon:
        raise InvalidScheduleError(
            f"Cannot schedule posts more than {max_horizon.days} days in advance"
        )
    return parsed


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "MAX_SCHEDULE_HORIZON",
    "JobStatus",
    "BackendType",
    "ScheduledJob",
    "ScheduleResult",
    "CancelResult",
    "QueueStats",
    "validate_scheduled_time",
]
