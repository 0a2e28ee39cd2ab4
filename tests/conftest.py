"""Shared fixtures for the scheduled post publisher test suite."""

from datetime import datetime, timezone
from typing import Any, Dict, List

import fakeredis
import pytest

from src.config import SchedulerSettings


# ---------------------------------------------------------------------------
# Ensure we don't hit real services during tests
# ---------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _block_env_keys(monkeypatch):
    """Clear connection settings so tests never hit real services."""
    keys = [
        "SUPABASE_URL",
        "SUPABASE_SERVICE_KEY",
        "REDIS_URL",
        "REDIS_HOST",
        "REDIS_PORT",
        "REDIS_DB",
        "REDIS_PASSWORD",
        "SCHEDULER_QUEUE_NAME",
        "SCHEDULER_PROBE_TIMEOUT",
        "LOG_LEVEL",
    ]
    for key in keys:
        monkeypatch.delenv(key, raising=False)


# ---------------------------------------------------------------------------
# Common datetime fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def sample_utc_now():
    """A fixed UTC datetime for deterministic tests."""
    return datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Settings tuned for fast tests
# ---------------------------------------------------------------------------
@pytest.fixture
def fast_settings():
    """Scheduler settings with short polling and backoff."""
    return SchedulerSettings(
        queue_name="test posts",
        probe_timeout_seconds=0.5,
        poll_interval_seconds=0.02,
        backoff_delay_ms=50,
    )


# ---------------------------------------------------------------------------
# Post collaborator
# ---------------------------------------------------------------------------
class FakePostStore:
    """In-memory ``PostCreator`` recording every created post."""

    def __init__(self) -> None:
        self.posts: List[Dict[str, Any]] = []
        self.fail_times: int = 0
        self.calls: int = 0

    async def create_post(self, post: Dict[str, Any]) -> Dict[str, Any]:
        self.calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("database unavailable")
        row = {"id": len(self.posts) + 1, **post}
        self.posts.append(row)
        return row


@pytest.fixture
def post_store():
    return FakePostStore()


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------
@pytest.fixture
def redis_server():
    """A shared in-memory Redis server; every client made from it sees the same data."""
    return fakeredis.FakeServer()


@pytest.fixture
def redis_factory(redis_server):
    """Zero-argument factory of async clients bound to ``redis_server``."""

    def factory():
        return fakeredis.FakeAsyncRedis(server=redis_server, decode_responses=True)

    return factory


@pytest.fixture
def unreachable_redis_factory():
    """Factory of clients whose server refuses every connection."""

    def factory():
        server = fakeredis.FakeServer()
        server.connected = False
        return fakeredis.FakeAsyncRedis(server=server, decode_responses=True)

    return factory
