"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

Shared base queue implementation for state-backed job queues.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import abstractmethod
from collections.abc import Mapping, Sequence
from random import random

from ..errors import EngineSubmissionError
from ..types import JSONValue
from .consumer import ConsumerConfig, ConsumerMetrics, JobConsumer
from .types import (
    WILDCARD,
    Job,
    JobHandler,
    JobOptions,
    JobQueue,
    RetryPolicy,
)

logger = logging.getLogger("backend_store_tasks.engine.base")


class BaseJobQueue(JobQueue):
    """
    Shared job lifecycle logic for storage-backed implementations.

    Backends only implement job persistence and per-name waiting-list
    primitives.
    """

    def __init__(
        self,
        *,
        retry_backoff_base_s: float = 0.0,
        retry_backoff_max_s: float = 30.0,
        retry_backoff_jitter_s: float = 0.0,
    ) -> None:
        """
        Configure the retry pacing used when a job carries no backoff policy.

        Args:
            retry_backoff_base_s: Exponential backoff base delay in seconds.
            retry_backoff_max_s: Maximum backoff delay cap in seconds.
            retry_backoff_jitter_s: Random jitter added to retry delay.
        """
        super().__init__()
        self._default_backoff = RetryPolicy(
            backoff_base_s=retry_backoff_base_s,
            backoff_max_s=retry_backoff_max_s,
            backoff_jitter_s=retry_backoff_jitter_s,
        )
        self._consumers: list[JobConsumer] = []

    def _now(self) -> float:
        """Return wall-clock timestamp used for job lifecycle events."""
        return time.time()

    @abstractmethod
    async def _save_job(self, job: Job) -> None:
        """Persist one job record."""

    @abstractmethod
    async def _load_job(self, job_id: str) -> Job | None:
        """Load one job record."""

    @abstractmethod
    async def _delete_job(self, job_id: str) -> None:
        """Delete one job record from storage."""

    @abstractmethod
    async def _push_waiting(self, name: str, job_id: str) -> None:
        """Append one job id to the waiting list of ``name``."""

    @abstractmethod
    async def _pop_waiting(
        self,
        names: Sequence[str] | None,
        *,
        timeout: float | None = None,
    ) -> str | None:
        """Pop the oldest job id waiting under one of ``names`` (any if None)."""

    async def _release_claim(self, job_id: str) -> None:
        """Forget that one popped job id is held by this process."""
        _ = job_id

    async def add(
        self,
        name: str,
        data: Mapping[str, JSONValue],
        options: JobOptions | None = None,
    ) -> Job:
        """Validate, persist, and queue a new job."""
        self._ensure_open()
        if not isinstance(name, str) or not name.strip():
            raise EngineSubmissionError("job name must be a non-empty string")
        if name == WILDCARD:
            raise EngineSubmissionError(f"'{WILDCARD}' is reserved for consumers")

        job = Job(name=name, data=dict(data), options=options or JobOptions())
        await self._save_job(job)
        await self._push_waiting(job.name, job.id)
        logger.debug("Job %s added (name=%s)", job.id[:8], name)
        return job

    async def take(
        self,
        names: Sequence[str] | None = None,
        *,
        timeout: float | None = None,
    ) -> Job | None:
        """
        Pop and activate the next runnable job.

        Removed/terminal job ids in the waiting lists are skipped; delayed
        retries go back to the end of their list until due.
        """
        deadline = None if timeout is None else time.monotonic() + max(timeout, 0.0)

        while True:
            remaining: float | None = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None

            job_id = await self._pop_waiting(names, timeout=remaining)
            if job_id is None:
                return None

            job = await self._load_job(job_id)
            if job is None or job.is_terminal:
                await self._release_claim(job_id)
                continue
            now = self._now()
            if job.next_attempt_at is not None and job.next_attempt_at > now:
                await self._push_waiting(job.name, job.id)
                await self._release_claim(job.id)
                sleep_s = min(
                    max(0.0, job.next_attempt_at - now),
                    self._max_sleep_window(deadline=deadline),
                )
                if sleep_s > 0:
                    await asyncio.sleep(sleep_s)
                continue

            job.status = "active"
            job.started_at = self._now()
            job.finished_at = None
            job.next_attempt_at = None
            await self._save_job(job)
            return job

    async def complete(self, job_id: str, *, result: JSONValue | None = None) -> Job:
        """
        Mark one job as completed and release its claim.

        Terminal jobs are immutable and returned unchanged.
        """
        try:
            return await self._complete(job_id, result=result)
        finally:
            await self._release_claim(job_id)

    async def _complete(self, job_id: str, *, result: JSONValue | None) -> Job:
        job = await self._require_job(job_id)
        if job.is_terminal:
            return job
        job.attempts_made += 1
        job.status = "completed"
        job.result = result
        job.error = None
        job.finished_at = self._now()
        if job.options.remove_on_complete:
            await self._delete_job(job.id)
        else:
            await self._save_job(job)
        return job

    async def fail(self, job_id: str, *, error: str) -> Job:
        """
        Record one failed attempt and release its claim.

        The job is re-queued while attempts remain. Terminal jobs are
        immutable and returned unchanged.
        """
        try:
            return await self._fail(job_id, error=error)
        finally:
            await self._release_claim(job_id)

    async def _fail(self, job_id: str, *, error: str) -> Job:
        job = await self._require_job(job_id)
        if job.is_terminal:
            return job
        job.attempts_made += 1
        job.error = error
        job.result = None

        if job.attempts_made < job.options.attempts:
            delay_s = self._compute_retry_delay_s(
                job.attempts_made,
                policy=job.options.backoff or self._default_backoff,
            )
            job.status = "delayed" if delay_s > 0 else "waiting"
            job.started_at = None
            job.next_attempt_at = self._now() + delay_s if delay_s > 0 else None
            await self._save_job(job)
            await self._push_waiting(job.name, job.id)
            return job

        job.status = "failed"
        job.finished_at = self._now()
        job.next_attempt_at = None
        if job.options.remove_on_fail:
            await self._delete_job(job.id)
        else:
            await self._save_job(job)
        return job

    async def get_job(self, job_id: str) -> Job | None:
        """Return one job by id, or `None` when missing."""
        return await self._load_job(job_id)

    async def process(
        self,
        name: str,
        concurrency: int,
        handler: JobHandler,
        *,
        config: ConsumerConfig | None = None,
        metrics: ConsumerMetrics | None = None,
    ) -> JobConsumer:
        """Start a consumer owned by this queue; it stops on ``close()``."""
        self._ensure_open()
        if not isinstance(name, str) or not name.strip():
            raise EngineSubmissionError("consumer name must be a non-empty string")
        consumer = JobConsumer(
            self,
            name,
            handler,
            concurrency=concurrency,
            config=config,
            metrics=metrics,
        )
        await consumer.start()
        self._consumers.append(consumer)
        return consumer

    async def _shutdown_consumers(self) -> None:
        consumers, self._consumers = self._consumers, []
        for consumer in consumers:
            await consumer.shutdown()

    @property
    def consumers(self) -> list[JobConsumer]:
        """Consumers registered through ``process``."""
        return list(self._consumers)

    async def _require_job(self, job_id: str) -> Job:
        """Return one job by id, raising `KeyError` when missing."""
        job = await self._load_job(job_id)
        if job is None:
            raise KeyError(f"Job '{job_id}' not found")
        return job

    def _compute_retry_delay_s(self, attempts_made: int, *, policy: RetryPolicy) -> float:
        """Compute retry delay using capped exponential backoff plus jitter."""
        if policy.backoff_base_s <= 0:
            base = 0.0
        else:
            base = policy.backoff_base_s * (2 ** max(0, attempts_made - 1))
        capped = min(base, policy.backoff_max_s)
        jitter = random() * policy.backoff_jitter_s
        return max(0.0, capped + jitter)

    def _max_sleep_window(self, *, deadline: float | None) -> float:
        """Bound how long take() sleeps while waiting for delayed retries."""
        if deadline is None:
            return 0.05
        return max(0.0, deadline - time.monotonic())
