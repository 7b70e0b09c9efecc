"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

Redis-backed persistent job queue.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from collections.abc import Sequence
from typing import Any

from .base import BaseJobQueue
from .types import Job, JobStatus

logger = logging.getLogger("backend_store_tasks.engine.redis")


def _text(value: str | bytes) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisJobQueue(BaseJobQueue):
    """
    Persistent job queue using Redis for durability across restarts.

    Uses:
    - Redis lists (``{prefix}:wait:{name}``) as per-name FIFO queues
    - Redis set (``{prefix}:names``) of every name ever queued
    - Redis list (``{prefix}:claimed``) of job ids popped but not yet settled
    - Redis sorted set (``{prefix}:consumers``) of live consumers by expiry
    - Redis hash (``{prefix}:jobs``) for job state tracking

    A single-name consumer blocks with ``BRPOPLPUSH`` into the claimed list.
    Wildcard consumers sweep every known name with ``RPOPLPUSH``, starting
    one name further along on each sweep, and sleep ``idle_poll_s`` between
    empty sweeps.

    Requires ``redis.asyncio`` (``pip install redis``).

    Args:
        redis: An ``redis.asyncio.Redis`` client instance.
        prefix: Key prefix for namespacing.
        idle_poll_s: Pause between empty wildcard sweeps.
    """

    def __init__(
        self,
        redis: Any,
        *,
        prefix: str = "store-tasks",
        idle_poll_s: float = 0.1,
        retry_backoff_base_s: float = 0.0,
        retry_backoff_max_s: float = 30.0,
        retry_backoff_jitter_s: float = 0.0,
    ) -> None:
        super().__init__(
            retry_backoff_base_s=retry_backoff_base_s,
            retry_backoff_max_s=retry_backoff_max_s,
            retry_backoff_jitter_s=retry_backoff_jitter_s,
        )
        if idle_poll_s <= 0:
            raise ValueError("idle_poll_s must be > 0")
        self._redis = redis
        self._prefix = prefix
        self._idle_poll_s = idle_poll_s
        self._sweep_offset = 0

    @property
    def client(self) -> Any:
        """Underlying Redis client."""
        return self._redis

    def _jobs_key(self) -> str:
        return f"{self._prefix}:jobs"

    def _names_key(self) -> str:
        return f"{self._prefix}:names"

    def _wait_key(self, name: str) -> str:
        return f"{self._prefix}:wait:{name}"

    def _claimed_key(self) -> str:
        return f"{self._prefix}:claimed"

    def _consumers_key(self) -> str:
        return f"{self._prefix}:consumers"

    def _serialize(self, job: Job) -> str:
        return json.dumps(job.to_dict(), default=str)

    def _deserialize(self, raw: str | bytes) -> Job:
        return Job.from_dict(json.loads(_text(raw)))

    async def _save_job(self, job: Job) -> None:
        await self._redis.hset(self._jobs_key(), job.id, self._serialize(job))

    async def _load_job(self, job_id: str) -> Job | None:
        raw = await self._redis.hget(self._jobs_key(), job_id)
        if raw is None:
            return None
        return self._deserialize(raw)

    async def _delete_job(self, job_id: str) -> None:
        await self._redis.hdel(self._jobs_key(), job_id)

    async def _push_waiting(self, name: str, job_id: str) -> None:
        await self._redis.sadd(self._names_key(), name)
        await self._redis.lpush(self._wait_key(name), job_id)

    async def _release_claim(self, job_id: str) -> None:
        await self._redis.lrem(self._claimed_key(), 1, job_id)

    async def _sweep_keys(self) -> list[str]:
        """Waiting-list keys of every known name, rotated once per call."""
        known = sorted(_text(n) for n in await self._redis.smembers(self._names_key()))
        if not known:
            return []
        start = self._sweep_offset % len(known)
        self._sweep_offset += 1
        ordered = known[start:] + known[:start]
        return [self._wait_key(name) for name in ordered]

    async def _pop_waiting(
        self,
        names: Sequence[str] | None,
        *,
        timeout: float | None = None,
    ) -> str | None:
        """
        Move one waiting job id of ``names`` onto the claimed list.

        For sub-second timeouts, wraps ``BRPOPLPUSH`` with ``asyncio.wait_for``
        so caller timeout semantics stay precise.
        """
        if timeout is not None and timeout <= 0:
            return None
        if names is not None and len(names) == 1:
            return await self._claim_blocking(self._wait_key(names[0]), timeout=timeout)

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            if names is None:
                keys = await self._sweep_keys()
            else:
                keys = [self._wait_key(name) for name in names]
            for key in keys:
                job_id = await self._redis.rpoplpush(key, self._claimed_key())
                if job_id is not None:
                    return _text(job_id)

            pause = self._idle_poll_s
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                pause = min(pause, remaining)
            await asyncio.sleep(pause)

    async def _claim_blocking(self, key: str, *, timeout: float | None) -> str | None:
        if timeout is None:
            result = await self._redis.brpoplpush(key, self._claimed_key(), timeout=0)
        else:
            redis_timeout = max(1, math.ceil(timeout))
            try:
                result = await asyncio.wait_for(
                    self._redis.brpoplpush(key, self._claimed_key(), timeout=redis_timeout),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                return None
        if result is None:
            return None
        return _text(result)

    async def register_consumer(self, consumer_id: str, *, ttl_s: float) -> None:
        """Record ``consumer_id`` as live until ``ttl_s`` seconds from now."""
        if ttl_s <= 0:
            raise ValueError("ttl_s must be > 0")
        now = time.time()
        await self._redis.zadd(self._consumers_key(), {consumer_id: now + ttl_s})
        await self._redis.zremrangebyscore(self._consumers_key(), "-inf", now)

    async def unregister_consumer(self, consumer_id: str) -> None:
        await self._redis.zrem(self._consumers_key(), consumer_id)

    async def live_consumer_count(self) -> int:
        """Number of consumers whose presence entry has not expired."""
        await self._redis.zremrangebyscore(self._consumers_key(), "-inf", time.time())
        return int(await self._redis.zcard(self._consumers_key()))

    async def recover_if_sole_consumer(self, consumer_id: str) -> int:
        """
        Requeue claimed jobs when ``consumer_id`` is the only live consumer.

        With no other consumer alive, every claimed id belongs to a consumer
        that crashed or was cancelled mid-job. Ids whose record is gone or
        terminal are dropped.
        """
        if await self.live_consumer_count() != 1:
            return 0
        return await self.requeue_claimed()

    async def requeue_claimed(self, *, limit: int | None = None) -> int:
        """Move claimed job ids back to their waiting lists."""
        moved = 0
        while limit is None or moved < limit:
            raw = await self._redis.rpop(self._claimed_key())
            if raw is None:
                break
            job = await self._load_job(_text(raw))
            if job is None or job.is_terminal:
                continue
            job.status = "waiting"
            job.started_at = None
            await self._save_job(job)
            await self._push_waiting(job.name, job.id)
            moved += 1
        if moved:
            logger.info("Requeued %d claimed job(s) under prefix %s", moved, self._prefix)
        return moved

    async def get_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 100,
    ) -> list[Job]:
        """List all jobs from the Redis hash with optional status filter."""
        all_raw = await self._redis.hvals(self._jobs_key())
        jobs = [self._deserialize(r) for r in all_raw]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        jobs.sort(key=lambda j: j.created_at)
        return jobs[:limit]

    async def _close_backend(self) -> None:
        close = getattr(self._redis, "aclose", None) or getattr(self._redis, "close", None)
        if callable(close):
            await close()
