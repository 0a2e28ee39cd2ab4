"""Tests for the Redis-backed DelayedJobQueue, run against fakeredis."""

import asyncio

import pytest

from src.exceptions import InvalidJobStateError, JobNotFoundError
from src.scheduling.redis_queue import DelayedJobQueue, QueuedJob


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def queue(redis_factory):
    return DelayedJobQueue(
        redis_factory(),
        name="test posts",
        attempts=3,
        backoff_delay_ms=50,
        remove_on_complete=2,
        remove_on_fail=2,
        poll_interval=0.02,
    )


async def _make_due(queue, job_id):
    """Pull a delayed job's due time into the past."""
    await queue.client.zadd(queue._key("delayed"), {job_id: 0})


class Handler:
    """Job handler that records calls and fails a set number of times."""

    def __init__(self, fail_times=0, gate=None):
        self.fail_times = fail_times
        self.gate = gate
        self.seen = []

    async def __call__(self, job: QueuedJob):
        self.seen.append(job.id)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("publish failed")
        return {"success": True, "jobId": job.id}


# =============================================================================
# add / get_job
# =============================================================================


class TestAdd:
    @pytest.mark.asyncio
    async def test_delayed_job_goes_to_delayed_set(self, queue):
        job = await queue.add("createPost", {"owner_id": 1}, 60_000, job_id="job-1")

        assert job.state == "delayed"
        assert job.max_attempts == 3
        counts = await queue.get_job_counts()
        assert counts["delayed"] == 1
        assert counts["waiting"] == 0

        score = await queue.client.zscore(queue._key("delayed"), "job-1")
        assert score == job.timestamp_ms + 60_000

    @pytest.mark.asyncio
    async def test_zero_delay_goes_to_wait(self, queue):
        job = await queue.add("createPost", {}, 0, job_id="job-now")
        assert job.state == "waiting"
        assert (await queue.get_job_counts())["waiting"] == 1

    @pytest.mark.asyncio
    async def test_get_job_round_trips_payload(self, queue):
        await queue.add("createPost", {"post_data": {"content": "hi"}, "owner_id": 5}, 1000, job_id="j")
        stored = await queue.get_job("j")
        assert stored.name == "createPost"
        assert stored.data == {"post_data": {"content": "hi"}, "owner_id": 5}
        assert stored.delay_ms == 1000
        assert stored.attempts_made == 0

    @pytest.mark.asyncio
    async def test_get_missing_job_returns_none(self, queue):
        assert await queue.get_job("nope") is None

    @pytest.mark.asyncio
    async def test_duplicate_id_is_not_enqueued_twice(self, queue):
        await queue.add("createPost", {"n": 1}, 60_000, job_id="dup")
        again = await queue.add("createPost", {"n": 2}, 60_000, job_id="dup")

        assert again.data == {"n": 1}
        assert (await queue.get_job_counts())["delayed"] == 1

    @pytest.mark.asyncio
    async def test_unserializable_payload_leaves_nothing_behind(self, queue):
        with pytest.raises(TypeError):
            await queue.add("createPost", {"at": object()}, 60_000, job_id="broken")

        assert await queue.get_job("broken") is None
        assert [key async for key in queue.client.scan_iter(match="bull:test posts:*")] == []


# =============================================================================
# remove
# =============================================================================


class TestRemove:
    @pytest.mark.asyncio
    async def test_remove_delayed_job(self, queue):
        await queue.add("createPost", {}, 60_000, job_id="job-1")
        removed = await queue.remove("job-1")

        assert removed.id == "job-1"
        assert await queue.get_job("job-1") is None
        assert (await queue.get_job_counts())["delayed"] == 0

    @pytest.mark.asyncio
    async def test_remove_waiting_job(self, queue):
        await queue.add("createPost", {}, 0, job_id="job-w")
        await queue.remove("job-w")
        assert (await queue.get_job_counts())["waiting"] == 0

    @pytest.mark.asyncio
    async def test_remove_unknown_raises_not_found(self, queue):
        with pytest.raises(JobNotFoundError):
            await queue.remove("missing")

    @pytest.mark.asyncio
    async def test_remove_active_job_raises_invalid_state(self, queue):
        await queue.add("createPost", {}, 0, job_id="busy")
        await queue.client.lmove(queue._key("wait"), queue._key("active"), "LEFT", "RIGHT")

        with pytest.raises(InvalidJobStateError) as exc_info:
            await queue.remove("busy")
        assert exc_info.value.status == "processing"
        assert await queue.get_job("busy") is not None

    @pytest.mark.asyncio
    async def test_remove_completed_job_raises_not_found(self, queue):
        await queue.add("createPost", {}, 0, job_id="done")
        await queue.process_next(Handler())

        with pytest.raises(JobNotFoundError):
            await queue.remove("done")


# =============================================================================
# Promotion and processing
# =============================================================================


class TestProcessing:
    @pytest.mark.asyncio
    async def test_job_not_due_is_not_processed(self, queue):
        handler = Handler()
        await queue.add("createPost", {}, 60_000, job_id="later")

        assert await queue.process_next(handler) is False
        assert handler.seen == []

    @pytest.mark.asyncio
    async def test_promote_due_moves_to_wait(self, queue):
        await queue.add("createPost", {}, 60_000, job_id="a")
        await queue.add("createPost", {}, 60_000, job_id="b")
        await _make_due(queue, "a")

        assert await queue.promote_due() == 1
        counts = await queue.get_job_counts()
        assert counts["waiting"] == 1
        assert counts["delayed"] == 1
        assert (await queue.get_job("a")).state == "waiting"

    @pytest.mark.asyncio
    async def test_successful_job_is_completed(self, queue):
        handler = Handler()
        await queue.add("createPost", {"owner_id": 1}, 60_000, job_id="ok")
        await _make_due(queue, "ok")

        assert await queue.process_next(handler) is True

        assert handler.seen == ["ok"]
        job = await queue.get_job("ok")
        assert job.state == "completed"
        assert job.attempts_made == 1
        assert job.return_value == {"success": True, "jobId": "ok"}
        assert job.finished_on_ms is not None
        counts = await queue.get_job_counts()
        assert counts["completed"] == 1
        assert counts["active"] == 0

    @pytest.mark.asyncio
    async def test_failed_attempt_is_retried_with_backoff(self, queue):
        handler = Handler(fail_times=1)
        await queue.add("createPost", {}, 0, job_id="flaky")

        await queue.process_next(handler)

        job = await queue.get_job("flaky")
        assert job.state == "delayed"
        assert job.attempts_made == 1
        assert job.failed_reason == "publish failed"
        counts = await queue.get_job_counts()
        assert counts["delayed"] == 1
        assert counts["active"] == 0

        await _make_due(queue, "flaky")
        await queue.process_next(handler)

        job = await queue.get_job("flaky")
        assert job.state == "completed"
        assert job.attempts_made == 2
        assert handler.seen == ["flaky", "flaky"]

    @pytest.mark.asyncio
    async def test_job_fails_after_max_attempts(self, queue):
        handler = Handler(fail_times=10)
        await queue.add("createPost", {}, 0, job_id="doomed")

        for _ in range(3):
            await queue.process_next(handler)
            if (await queue.get_job("doomed")).state == "delayed":
                await _make_due(queue, "doomed")

        job = await queue.get_job("doomed")
        assert job.state == "failed"
        assert job.attempts_made == 3
        assert len(handler.seen) == 3
        counts = await queue.get_job_counts()
        assert counts["failed"] == 1
        assert counts["delayed"] == 0

    @pytest.mark.asyncio
    async def test_completed_history_is_trimmed(self, queue):
        handler = Handler()
        for i in range(4):
            await queue.add("createPost", {}, 0, job_id=f"job-{i}")
        for _ in range(4):
            await queue.process_next(handler)

        assert (await queue.get_job_counts())["completed"] == 2
        assert await queue.get_job("job-0") is None
        assert await queue.get_job("job-1") is None
        assert await queue.get_job("job-3") is not None

    @pytest.mark.asyncio
    async def test_zero_retention_keeps_no_history(self, redis_factory):
        queue = DelayedJobQueue(
            redis_factory(), name="no history", remove_on_complete=0, remove_on_fail=0, attempts=1
        )
        for i in range(3):
            await queue.add("createPost", {}, 0, job_id=f"job-{i}")
        for _ in range(3):
            await queue.process_next(Handler())
        await queue.add("createPost", {}, 0, job_id="bad")
        await queue.process_next(Handler(fail_times=1))

        counts = await queue.get_job_counts()
        assert counts["completed"] == 0
        assert counts["failed"] == 0
        assert await queue.client.exists(queue._key("completed"), queue._key("failed")) == 0
        for job_id in ("job-0", "job-1", "job-2", "bad"):
            assert await queue.get_job(job_id) is None

    @pytest.mark.asyncio
    async def test_requeue_stalled(self, queue):
        await queue.add("createPost", {}, 0, job_id="stuck")
        await queue.client.lmove(queue._key("wait"), queue._key("active"), "LEFT", "RIGHT")

        assert await queue.requeue_stalled() == 1
        counts = await queue.get_job_counts()
        assert counts["active"] == 0
        assert counts["waiting"] == 1

    @pytest.mark.asyncio
    async def test_worker_processes_due_jobs(self, queue):
        handler = Handler()
        await queue.add("createPost", {}, 20, job_id="soon")

        queue.process(handler)
        for _ in range(50):
            if handler.seen:
                break
            await asyncio.sleep(0.02)
        await asyncio.sleep(0.05)

        assert handler.seen == ["soon"]
        assert (await queue.get_job("soon")).state == "completed"
        await queue.close()

    @pytest.mark.asyncio
    async def test_second_worker_is_rejected(self, queue):
        queue.process(Handler())
        with pytest.raises(RuntimeError):
            queue.process(Handler())
        await queue.close()


# =============================================================================
# Queries
# =============================================================================


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_jobs_by_state(self, queue):
        await queue.add("createPost", {"n": 1}, 60_000, job_id="d")
        await queue.add("createPost", {"n": 2}, 0, job_id="w")

        jobs = await queue.get_jobs(["delayed", "waiting"])
        assert [(job.id, job.state) for job in jobs] == [("d", "delayed"), ("w", "waiting")]

    @pytest.mark.asyncio
    async def test_get_jobs_empty(self, queue):
        assert await queue.get_jobs(["delayed", "active"]) == []

    @pytest.mark.asyncio
    async def test_get_jobs_unknown_state(self, queue):
        with pytest.raises(ValueError, match="Unknown job state"):
            await queue.get_jobs(["paused"])

    @pytest.mark.asyncio
    async def test_obliterate_removes_all_keys(self, queue):
        await queue.add("createPost", {}, 60_000, job_id="a")
        await queue.add("createPost", {}, 0, job_id="b")

        await queue.obliterate()

        keys = [key async for key in queue.client.scan_iter(match="bull:test posts:*")]
        assert keys == []


# =============================================================================
# Probe
# =============================================================================


class TestProbe:
    @pytest.mark.asyncio
    async def test_probe_succeeds_and_leaves_no_keys(self, redis_factory):
        assert await DelayedJobQueue.probe(redis_factory(), timeout=0.5) is True

        inspector = redis_factory()
        assert [key async for key in inspector.scan_iter(match="bull:*")] == []
        await inspector.aclose()

    @pytest.mark.asyncio
    async def test_probe_fails_when_unreachable(self, unreachable_redis_factory):
        assert await DelayedJobQueue.probe(unreachable_redis_factory(), timeout=0.5) is False
