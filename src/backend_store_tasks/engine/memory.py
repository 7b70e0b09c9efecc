"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

In-memory job queue implementation.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from collections.abc import Sequence

from .base import BaseJobQueue
from .types import Job, JobStatus


class InMemoryJobQueue(BaseJobQueue):
    """
    In-process job queue using an ``asyncio.Condition`` and dict-based tracking.

    Suitable for single-process systems and testing. Jobs are stored as JSON
    snapshots so they behave like persisted records, and are lost on process
    restart.
    """

    def __init__(
        self,
        *,
        retry_backoff_base_s: float = 0.0,
        retry_backoff_max_s: float = 30.0,
        retry_backoff_jitter_s: float = 0.0,
    ) -> None:
        super().__init__(
            retry_backoff_base_s=retry_backoff_base_s,
            retry_backoff_max_s=retry_backoff_max_s,
            retry_backoff_jitter_s=retry_backoff_jitter_s,
        )
        self._jobs: dict[str, str] = {}
        self._waiting: deque[tuple[str, str]] = deque()
        self._available = asyncio.Condition()

    async def _save_job(self, job: Job) -> None:
        self._jobs[job.id] = json.dumps(job.to_dict(), default=str)

    async def _load_job(self, job_id: str) -> Job | None:
        raw = self._jobs.get(job_id)
        if raw is None:
            return None
        return Job.from_dict(json.loads(raw))

    async def _delete_job(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    async def _push_waiting(self, name: str, job_id: str) -> None:
        async with self._available:
            self._waiting.append((name, job_id))
            self._available.notify_all()

    async def _pop_waiting(
        self,
        names: Sequence[str] | None,
        *,
        timeout: float | None = None,
    ) -> str | None:
        """Wait for and pop the oldest waiting id accepted by ``names``."""
        async with self._available:
            try:
                await asyncio.wait_for(
                    self._available.wait_for(lambda: self._find(names) is not None),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                return None
            index = self._find(names)
            if index is None:
                return None
            _, job_id = self._waiting[index]
            del self._waiting[index]
            return job_id

    def _find(self, names: Sequence[str] | None) -> int | None:
        for index, (name, _) in enumerate(self._waiting):
            if names is None or name in names:
                return index
        return None

    async def get_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 100,
    ) -> list[Job]:
        """List stored jobs with optional status filter."""
        jobs = [Job.from_dict(json.loads(raw)) for raw in self._jobs.values()]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        jobs.sort(key=lambda j: j.created_at)
        return jobs[:limit]

    async def _close_backend(self) -> None:
        self._waiting.clear()

    @property
    def waiting_count(self) -> int:
        """Number of job ids waiting to be claimed."""
        return len(self._waiting)

    @property
    def total_count(self) -> int:
        """Total number of stored jobs."""
        return len(self._jobs)
