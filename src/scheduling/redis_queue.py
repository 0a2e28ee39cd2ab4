"""
Redis-backed delayed job queue used as the durable scheduling backend.

``DelayedJobQueue`` stores each job as a hash and tracks its state by
membership in one of five Redis structures under ``{prefix}:{name}:``:

- ``delayed``   sorted set, score = due time in epoch milliseconds
- ``wait``      list of ids that are due and waiting for the worker
- ``active``    list of ids the worker is currently processing
- ``completed`` list of finished ids, newest first, trimmed to retention
- ``failed``    list of ids that exhausted their attempts, trimmed likewise

Every state transition is a single MULTI/EXEC, promotion out of ``delayed``
is guarded by WATCH, and removal relies on ZREM/LREM return values, so a
cancel racing the worker either removes the job or finds it gone; it can
never remove a job the worker has already taken.

The worker runs with concurrency 1 and gives at-least-once delivery: ids
left in ``active`` by a crashed process are requeued when a worker starts.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from src.exceptions import InvalidJobStateError, JobNotFoundError
from src.utils import exponential_backoff_ms, to_epoch_ms, utc_now

logger = logging.getLogger(__name__)

JOB_STATES = ("waiting", "delayed", "active", "completed", "failed")


# =============================================================================
# JOB RECORD
# =============================================================================


@dataclass
class QueuedJob:
    """A job as stored in Redis.

    Attributes:
        id: Job identifier (caller supplied).
        name: Job type name (e.g. ``"createPost"``).
        data: JSON payload handed to the worker.
        delay_ms: Delay requested at enqueue time.
        timestamp_ms: Enqueue time in epoch milliseconds.
        state: One of ``JOB_STATES``.
        attempts_made: Attempts that have finished (successfully or not).
        max_attempts: Attempt limit before the job is moved to ``failed``.
        processed_on_ms: When the most recent attempt started.
        finished_on_ms: When the job completed or finally failed.
        failed_reason: Message of the most recent failure.
        return_value: Worker result of a completed job.
    """

    id: str
    name: str
    data: Dict[str, Any]
    delay_ms: int
    timestamp_ms: int
    state: str = "delayed"
    attempts_made: int = 0
    max_attempts: int = 1
    processed_on_ms: Optional[int] = None
    finished_on_ms: Optional[int] = None
    failed_reason: Optional[str] = None
    return_value: Any = field(default=None)

    @classmethod
    def from_hash(cls, job_id: str, raw: Dict[str, str]) -> "QueuedJob":
        def _int(key: str) -> Optional[int]:
            value = raw.get(key)
            return int(value) if value not in (None, "") else None

        return_value = raw.get("return_value")
        return cls(
            id=job_id,
            name=raw.get("name", ""),
            data=json.loads(raw.get("data") or "{}"),
            delay_ms=_int("delay") or 0,
            timestamp_ms=_int("timestamp") or 0,
            state=raw.get("state", "delayed"),
            attempts_made=_int("attempts_made") or 0,
            max_attempts=_int("max_attempts") or 1,
            processed_on_ms=_int("processed_on"),
            finished_on_ms=_int("finished_on"),
            failed_reason=raw.get("failed_reason") or None,
            return_value=json.loads(return_value) if return_value else None,
        )


JobHandler = Callable[[QueuedJob], Awaitable[Any]]


# =============================================================================
# QUEUE
# =============================================================================


class DelayedJobQueue:
    """Delayed job queue over a ``redis.asyncio`` client.

    Args:
        client: Redis client created with ``decode_responses=True``.
        name: Queue name; part of every key.
        prefix: Key namespace prefix.
        remove_on_complete: Completed jobs kept as history.
        remove_on_fail: Failed jobs kept as history.
        attempts: Attempts per job before it is marked failed.
        backoff_delay_ms: First retry delay; doubles on each further retry.
        poll_interval: Seconds the worker sleeps when nothing is due.
    """

    def __init__(
        self,
        client: "aioredis.Redis",
        name: str,
        prefix: str = "bull",
        remove_on_complete: int = 10,
        remove_on_fail: int = 50,
        attempts: int = 3,
        backoff_delay_ms: int = 2000,
        poll_interval: float = 1.0,
    ) -> None:
        self.client = client
        self.name = name
        self.prefix = prefix
        self.remove_on_complete = remove_on_complete
        self.remove_on_fail = remove_on_fail
        self.attempts = attempts
        self.backoff_delay_ms = backoff_delay_ms
        self.poll_interval = poll_interval

        self._worker: Optional[asyncio.Task] = None
        self._running: bool = False

    # ================================================================
    # KEYS
    # ================================================================

    def _key(self, suffix: str) -> str:
        return f"{self.prefix}:{self.name}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"job:{job_id}")

    @property
    def _delayed(self) -> str:
        return self._key("delayed")

    @property
    def _wait(self) -> str:
        return self._key("wait")

    @property
    def _active(self) -> str:
        return self._key("active")

    @property
    def _completed(self) -> str:
        return self._key("completed")

    @property
    def _failed(self) -> str:
        return self._key("failed")

    # ================================================================
    # PRODUCER SIDE
    # ================================================================

    async def add(
        self,
        name: str,
        data: Dict[str, Any],
        delay_ms: int,
        job_id: str,
    ) -> QueuedJob:
        """Enqueue a job to become due after ``delay_ms``.

        An id that already exists is not enqueued a second time; the
        stored job is returned instead. The payload is serialized before
        Redis is touched and the existence check runs under WATCH, so a
        failed add leaves no partial job behind.

        Raises:
            TypeError: ``data`` is not JSON-serializable.
        """
        payload = json.dumps(data)
        job_key = self._job_key(job_id)

        now_ms = to_epoch_ms(utc_now())
        state = "delayed" if delay_ms > 0 else "waiting"
        mapping = {
            "name": name,
            "data": payload,
            "delay": delay_ms,
            "timestamp": now_ms,
            "state": state,
            "attempts_made": 0,
            "max_attempts": self.attempts,
        }

        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(job_key)
                exists = await pipe.exists(job_key)
                if not exists:
                    pipe.multi()
                    pipe.hset(job_key, mapping=mapping)
                    if delay_ms > 0:
                        pipe.zadd(self._delayed, {job_id: now_ms + delay_ms})
                    else:
                        pipe.rpush(self._wait, job_id)
                    await pipe.execute()
            except WatchError:
                # Another producer wrote the same id between WATCH and EXEC
                exists = True

        if exists:
            logger.warning("[QUEUE] Job %s already exists in '%s', not re-added", job_id, self.name)
            existing = await self.get_job(job_id)
            if existing is not None:
                return existing

        return QueuedJob(
            id=job_id,
            name=name,
            data=data,
            delay_ms=delay_ms,
            timestamp_ms=now_ms,
            state=state,
            max_attempts=self.attempts,
        )

    async def get_job(self, job_id: str) -> Optional[QueuedJob]:
        raw = await self.client.hgetall(self._job_key(job_id))
        if not raw:
            return None
        return QueuedJob.from_hash(job_id, raw)

    async def remove(self, job_id: str) -> QueuedJob:
        """Remove a job that has not started processing.

        Raises:
            JobNotFoundError: Unknown id, or the job already finished.
            InvalidJobStateError: The worker is processing the job.
        """
        job = await self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        removed = await self.client.zrem(self._delayed, job_id)
        if not removed:
            removed = await self.client.lrem(self._wait, 1, job_id)
        if removed:
            await self.client.delete(self._job_key(job_id))
            return job

        if job_id in await self.client.lrange(self._active, 0, -1):
            raise InvalidJobStateError(job_id, "processing")
        raise JobNotFoundError(job_id)

    async def get_jobs(self, states: Iterable[str]) -> List[QueuedJob]:
        """Return jobs in the given states, in state order."""
        ids_by_state: List[tuple] = []
        for state in states:
            if state == "delayed":
                ids = await self.client.zrange(self._delayed, 0, -1)
            elif state in JOB_STATES:
                ids = await self.client.lrange(self._state_list(state), 0, -1)
            else:
                raise ValueError(f"Unknown job state '{state}'. Valid states: {JOB_STATES}")
            ids_by_state.extend((job_id, state) for job_id in ids)

        if not ids_by_state:
            return []

        async with self.client.pipeline(transaction=False) as pipe:
            for job_id, _ in ids_by_state:
                pipe.hgetall(self._job_key(job_id))
            raws = await pipe.execute()

        jobs: List[QueuedJob] = []
        for (job_id, state), raw in zip(ids_by_state, raws):
            if not raw:
                continue
            job = QueuedJob.from_hash(job_id, raw)
            job.state = state
            jobs.append(job)
        return jobs

    async def get_job_counts(self) -> Dict[str, int]:
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.llen(self._wait)
            pipe.zcard(self._delayed)
            pipe.llen(self._active)
            pipe.llen(self._completed)
            pipe.llen(self._failed)
            waiting, delayed, active, completed, failed = await pipe.execute()
        return {
            "waiting": waiting,
            "delayed": delayed,
            "active": active,
            "completed": completed,
            "failed": failed,
        }

    async def obliterate(self) -> None:
        """Delete every key belonging to this queue."""
        keys = [key async for key in self.client.scan_iter(match=self._key("*"))]
        if keys:
            await self.client.delete(*keys)

    def _state_list(self, state: str) -> str:
        return {
            "waiting": self._wait,
            "active": self._active,
            "completed": self._completed,
            "failed": self._failed,
        }[state]

    # ================================================================
    # WORKER SIDE
    # ================================================================

    def process(self, handler: JobHandler) -> None:
        """Start the long-lived worker task that runs ``handler`` on due jobs."""
        if self._worker is not None:
            raise RuntimeError(f"Queue '{self.name}' already has a worker")
        self._running = True
        self._worker = asyncio.ensure_future(self._run(handler))

    async def _run(self, handler: JobHandler) -> None:
        logger.info("[QUEUE] Worker started for '%s' (poll=%.1fs)", self.name, self.poll_interval)
        await self.requeue_stalled()

        while self._running:
            try:
                processed = await self.process_next(handler)
            except asyncio.CancelledError:
                logger.info("[QUEUE] Worker for '%s' cancelled", self.name)
                break
            except Exception:
                logger.exception("[QUEUE] Unexpected error in worker loop for '%s'", self.name)
                processed = False

            if processed:
                continue
            try:
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break

        logger.info("[QUEUE] Worker for '%s' stopped", self.name)

    async def process_next(self, handler: JobHandler) -> bool:
        """Promote due jobs, then take and process at most one.

        Returns:
            ``True`` if a job was processed.
        """
        await self.promote_due()

        job_id = await self.client.lmove(self._wait, self._active, "LEFT", "RIGHT")
        if job_id is None:
            return False

        job = await self.get_job(job_id)
        if job is None:
            # Hash vanished (obliterated queue); drop the dangling id
            await self.client.lrem(self._active, 1, job_id)
            return True

        now_ms = to_epoch_ms(utc_now())
        await self.client.hset(
            self._job_key(job_id),
            mapping={"state": "active", "processed_on": now_ms},
        )
        job.state = "active"
        job.processed_on_ms = now_ms

        try:
            result = await handler(job)
        except Exception as exc:
            await self._record_failure(job, exc)
        else:
            await self._record_completion(job, result)
        return True

    async def promote_due(self) -> int:
        """Move every delayed job whose due time has passed onto ``wait``."""
        now_ms = to_epoch_ms(utc_now())
        due_ids = await self.client.zrangebyscore(self._delayed, "-inf", now_ms)

        promoted = 0
        for job_id in due_ids:
            async with self.client.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(self._delayed)
                    score = await pipe.zscore(self._delayed, job_id)
                    if score is None or score > now_ms:
                        continue
                    pipe.multi()
                    pipe.zrem(self._delayed, job_id)
                    pipe.rpush(self._wait, job_id)
                    pipe.hset(self._job_key(job_id), "state", "waiting")
                    await pipe.execute()
                    promoted += 1
                except WatchError:
                    # Delayed set changed underneath us; retried on next poll
                    logger.debug("[QUEUE] Promotion of %s raced a concurrent change", job_id)
        return promoted

    async def requeue_stalled(self) -> int:
        """Put ids left in ``active`` by a dead worker back on ``wait``."""
        stalled = await self.client.lrange(self._active, 0, -1)
        for job_id in stalled:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lrem(self._active, 1, job_id)
                pipe.rpush(self._wait, job_id)
                pipe.hset(self._job_key(job_id), "state", "waiting")
                await pipe.execute()
        if stalled:
            logger.warning("[QUEUE] Requeued %d stalled jobs in '%s'", len(stalled), self.name)
        return len(stalled)

    async def _record_completion(self, job: QueuedJob, result: Any) -> None:
        now_ms = to_epoch_ms(utc_now())
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._active, 1, job.id)
            pipe.lpush(self._completed, job.id)
            pipe.hset(
                self._job_key(job.id),
                mapping={
                    "state": "completed",
                    "attempts_made": job.attempts_made + 1,
                    "finished_on": now_ms,
                    "return_value": json.dumps(result, default=str),
                },
            )
            await pipe.execute()
        await self._trim_history(self._completed, self.remove_on_complete)
        logger.info("[QUEUE] Job %s completed", job.id)

    async def _record_failure(self, job: QueuedJob, exc: Exception) -> None:
        attempts_made = job.attempts_made + 1
        reason = str(exc) or exc.__class__.__name__
        now_ms = to_epoch_ms(utc_now())

        if attempts_made < job.max_attempts:
            backoff_ms = exponential_backoff_ms(self.backoff_delay_ms, attempts_made)
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lrem(self._active, 1, job.id)
                pipe.zadd(self._delayed, {job.id: now_ms + backoff_ms})
                pipe.hset(
                    self._job_key(job.id),
                    mapping={
                        "state": "delayed",
                        "attempts_made": attempts_made,
                        "failed_reason": reason,
                    },
                )
                await pipe.execute()
            logger.warning(
                "[QUEUE] Job %s attempt %d/%d failed: %s. Retrying in %.1fs",
                job.id,
                attempts_made,
                job.max_attempts,
                reason,
                backoff_ms / 1000,
            )
            return

        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self._active, 1, job.id)
            pipe.lpush(self._failed, job.id)
            pipe.hset(
                self._job_key(job.id),
                mapping={
                    "state": "failed",
                    "attempts_made": attempts_made,
                    "failed_reason": reason,
                    "finished_on": now_ms,
                },
            )
            await pipe.execute()
        await self._trim_history(self._failed, self.remove_on_fail)
        logger.error(
            "[QUEUE] Job %s failed after %d attempts: %s",
            job.id,
            attempts_made,
            reason,
        )

    async def _trim_history(self, list_key: str, keep: int) -> None:
        keep = max(keep, 0)
        overflow = await self.client.lrange(list_key, keep, -1)
        if not overflow:
            return
        async with self.client.pipeline(transaction=True) as pipe:
            if keep == 0:
                # LTRIM 0 -1 would keep the whole list
                pipe.delete(list_key)
            else:
                pipe.ltrim(list_key, 0, keep - 1)
            pipe.delete(*[self._job_key(job_id) for job_id in overflow])
            await pipe.execute()

    # ================================================================
    # LIFECYCLE
    # ================================================================

    async def close(self) -> None:
        """Stop the worker (if any) and close the Redis connection."""
        self._running = False
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.client.aclose()

    @classmethod
    async def probe(
        cls,
        client: "aioredis.Redis",
        prefix: str = "bull",
        timeout: float = 2.0,
    ) -> bool:
        """Check that jobs can be enqueued and read back.

        Runs against a throwaway, uniquely named queue whose keys are all
        deleted afterwards. Closes ``client`` before returning.

        Returns:
            ``True`` when Redis accepted and returned the probe job.
        """
        probe_queue = cls(client, name=f"probe-{uuid.uuid4().hex}", prefix=prefix)
        try:
            await asyncio.wait_for(client.ping(), timeout)
            await asyncio.wait_for(probe_queue.add("probe", {}, 0, job_id="probe"), timeout)
            job = await asyncio.wait_for(probe_queue.get_job("probe"), timeout)
            return job is not None
        except Exception as exc:
            logger.warning("[QUEUE] Redis probe failed: %s", exc or exc.__class__.__name__)
            return False
        finally:
            try:
                await asyncio.wait_for(probe_queue.obliterate(), timeout)
            except Exception as exc:
                logger.debug("[QUEUE] Probe cleanup skipped: %s", exc or exc.__class__.__name__)
            await client.aclose()


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    "JOB_STATES",
    "QueuedJob",
    "JobHandler",
    "DelayedJobQueue",
]
