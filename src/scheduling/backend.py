"""Contract shared by the Redis-backed and in-memory scheduler backends."""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from src.scheduling.models import (
    BackendType,
    CancelResult,
    QueueStats,
    ScheduledJob,
    ScheduleResult,
)

# publish(job_id, post_data, owner_id) -> created post
PublishFn = Callable[[str, Dict[str, Any], Any], Awaitable[Any]]


class SchedulerBackend(Protocol):
    """Uniform schedule / cancel / list / stats contract.

    ``delay_seconds`` has already been validated as positive by the
    caller; backends only arm the delayed execution.
    """

    backend_type: BackendType

    async def start(self) -> None:
        ...

    async def schedule(
        self,
        post_data: Dict[str, Any],
        owner_id: Any,
        scheduled_time: datetime,
        delay_seconds: float,
    ) -> ScheduleResult:
        ...

    async def cancel(self, job_id: str) -> CancelResult:
        ...

    async def list_for_owner(self, owner_id: Any) -> List[ScheduledJob]:
        ...

    async def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        ...

    async def stats(self) -> QueueStats:
        ...

    async def close(self) -> None:
        ...


__all__ = [
    "PublishFn",
    "SchedulerBackend",
]
