"""
Request handlers for the scheduled posts endpoints.

Transport-agnostic: a REST or GraphQL adapter authenticates the caller,
passes the user id and request payload in, and serializes the returned
dicts. Validation and ownership checks live here, not in the service.

Endpoints served:
    POST   /api/posts/schedule             -> schedule_post
    GET    /api/posts/scheduled            -> list_scheduled_posts
    DELETE /api/posts/scheduled/{jobId}    -> cancel_scheduled_post
    GET    /api/admin/queue/stats          -> queue_stats
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from src.config import SchedulerSettings, get_settings
from src.exceptions import JobNotFoundError, ValidationError
from src.scheduling.models import validate_scheduled_time
from src.scheduling.service import ScheduledPostService

logger = logging.getLogger(__name__)


class ScheduledPostHandlers:
    """Validates requests and enforces ownership around ``ScheduledPostService``.

    A job that does not exist and a job owned by someone else produce the
    same ``JobNotFoundError``, so callers cannot probe for other users' ids.
    """

    def __init__(
        self,
        service: ScheduledPostService,
        settings: Optional[SchedulerSettings] = None,
    ) -> None:
        self.service = service
        self.settings = settings or get_settings()

    async def schedule_post(self, user_id: Any, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Schedule a post to be published later.

        Args:
            user_id: Authenticated caller.
            payload: ``{"content", "scheduledTime"}`` plus optional
                ``media_url`` and ``comments_enabled``.

        Raises:
            ValidationError: Invalid post fields.
            InvalidScheduleError: Invalid ``scheduledTime``.
        """
        post_data = self._validate_post_data(payload)
        scheduled_at = validate_scheduled_time(
            payload.get("scheduledTime"),
            max_horizon=timedelta(days=self.settings.max_schedule_days),
        )

        result = await self.service.schedule(post_data, user_id, scheduled_at)
        logger.info("[HANDLERS] Post scheduled by user %s for %s", user_id, scheduled_at.isoformat())

        return {
            "message": "Post scheduled successfully",
            "data": {
                "jobId": result.job_id,
                "scheduledTime": result.scheduled_time.isoformat(),
                "status": result.status.value,
                "postData": post_data,
            },
        }

    async def list_scheduled_posts(self, user_id: Any) -> Dict[str, Any]:
        jobs = await self.service.list_for_owner(user_id)
        return {
            "message": "Scheduled posts retrieved successfully",
            "data": [job.to_dict() for job in jobs],
            "count": len(jobs),
        }

    async def cancel_scheduled_post(self, user_id: Any, job_id: Optional[str]) -> Dict[str, Any]:
        """Cancel one of the caller's scheduled posts.

        Raises:
            ValidationError: ``job_id`` missing.
            JobNotFoundError: Unknown job, or not owned by the caller.
            InvalidJobStateError: The job is already being published.
        """
        if not job_id:
            raise ValidationError("Job ID is required")

        job = await self.service.get_job(job_id)
        if job is None or job.owner_id != user_id:
            raise JobNotFoundError(job_id)

        result = await self.service.cancel(job_id)
        logger.info("[HANDLERS] Scheduled post %s cancelled by user %s", job_id, user_id)

        return {
            "message": "Scheduled post cancelled successfully",
            "data": {"jobId": result.job_id, "status": result.status.value},
        }

    async def queue_stats(self) -> Dict[str, Any]:
        stats = await self.service.stats()
        return {
            "message": "Queue statistics retrieved successfully",
            "data": stats.to_dict(),
        }

    # ================================================================
    # VALIDATION
    # ================================================================

    def _validate_post_data(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be an object")

        content = payload.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("content is required")
        if len(content) > self.settings.max_content_length:
            raise ValidationError(
                f"content must be at most {self.settings.max_content_length} characters"
            )

        post_data: Dict[str, Any] = {"content": content}

        media_url = payload.get("media_url")
        if media_url is not None:
            if not isinstance(media_url, str):
                raise ValidationError("media_url must be a string")
            post_data["media_url"] = media_url

        comments_enabled = payload.get("comments_enabled")
        if comments_enabled is not None:
            if not isinstance(comments_enabled, bool):
                raise ValidationError("comments_enabled must be a boolean")
            post_data["comments_enabled"] = comments_enabled

        return post_data


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "ScheduledPostHandlers",
]
