"""
Post persistence collaborator used by the scheduled post publisher.

The scheduler only ever needs one operation from the data layer: create a
post on behalf of a user. ``PostCreator`` is that contract; ``SupabaseDB``
is the production implementation backed by the ``posts`` table.

Usage::

    from src.database import SupabaseDB

    # In async context:
    db = await SupabaseDB.create()
    post = await db.create_post({"content": "...", "user_id": 42})
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from supabase import AsyncClient, create_async_client

from src.exceptions import DatabaseError, ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# VALIDATION HELPERS
# =============================================================================


def validate_not_empty(value: Any, name: str) -> None:
    """Validate that *value* is not ``None`` or an empty string.

    Args:
        value: The value to check.
        name: Human-readable field name used in error messages.

    Raises:
        ValidationError: If *value* is ``None`` or a blank string.
    """
    if value is None:
        raise ValidationError(f"{name} cannot be None")
    if isinstance(value, str) and not value.strip():
        raise ValidationError(f"{name} cannot be empty string")


# =============================================================================
# COLLABORATOR CONTRACT
# =============================================================================


class PostCreator(Protocol):
    """Anything that can create a post for a user.

    ``post`` carries ``content``, ``user_id`` and optionally ``media_url``
    and ``comments_enabled``. Implementations return the stored post and
    raise on any persistence failure.
    """

    async def create_post(self, post: Dict[str, Any]) -> Dict[str, Any]:
        ...


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class SupabaseConfig:
    """Supabase configuration loaded from environment variables.

    Attributes:
        url: The Supabase project URL (``SUPABASE_URL``).
        key: The service-role key for full server-side access
            (``SUPABASE_SERVICE_KEY``).
    """

    url: str
    key: str  # service_role key for full server-side access

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        """Create a config instance from environment variables.

        Reads ``SUPABASE_URL`` and ``SUPABASE_SERVICE_KEY``.

        Raises:
            ValueError: If either variable is missing or empty.
        """
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_KEY must be set"
            )

        return cls(url=url, key=key)


# =============================================================================
# SUPABASE DATABASE CLIENT
# =============================================================================


class SupabaseDB:
    """Async post store backed by Supabase.

    **Important:** Use the :meth:`create` factory method instead of
    ``__init__`` directly -- the underlying async client requires an
    ``await`` during initialisation.
    """

    def __init__(self, client: AsyncClient) -> None:
        """Private constructor.  Use :meth:`create` factory method."""
        self.client = client

    @classmethod
    async def create(
        cls, config: Optional[SupabaseConfig] = None
    ) -> "SupabaseDB":
        """Factory method to create an async :class:`SupabaseDB` instance.

        Args:
            config: Optional configuration.  When ``None``,
                :meth:`SupabaseConfig.from_env` is used.
        """
        config = config or SupabaseConfig.from_env()
        client = await create_async_client(config.url, config.key)
        return cls(client)

    # -----------------------------------------------------------------
    # POSTS
    # -----------------------------------------------------------------

    async def create_post(self, post: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a post row and return it.

        Args:
            post: Post data dict.  Must contain ``user_id`` and non-empty
                ``content``; ``media_url`` and ``comments_enabled`` are
                optional (``comments_enabled`` defaults to ``True``).

        Returns:
            The inserted row.

        Raises:
            ValidationError: On missing / invalid fields.
            DatabaseError: When the insert returns no data.
        """
        if not post:
            raise ValidationError("post cannot be None or empty")
        validate_not_empty(post.get("user_id"), "user_id")
        validate_not_empty(post.get("content"), "content")

        row = {
            "user_id": post["user_id"],
            "content": post["content"],
            "media_url": post.get("media_url"),
            "comments_enabled": post.get("comments_enabled", True),
            "is_deleted": False,
        }

        result = await self.client.table("posts").insert(row).execute()
        if not result.data:
            raise DatabaseError("Insert succeeded but returned no data")

        logger.debug(
            "[DB] Created post %s for user %s",
            result.data[0].get("id"),
            row["user_id"],
        )
        return result.data[0]


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "PostCreator",
    "SupabaseConfig",
    "SupabaseDB",
    "validate_not_empty",
]
