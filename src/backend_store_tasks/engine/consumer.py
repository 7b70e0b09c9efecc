"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

Job consumer: loop that claims jobs for one name filter and runs a handler.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from .types import WILDCARD, Job, JobHandler, StrandedJobRecovery

if TYPE_CHECKING:
    from .types import JobQueue

logger = logging.getLogger("backend_store_tasks.engine.consumer")


class ConsumerMetrics(Protocol):
    """Minimal metrics interface for consumer instrumentation."""

    def incr(
        self, name: str, value: int = 1, *, tags: Mapping[str, str] | None = None
    ) -> None:
        """Increment a counter metric."""


class NoOpConsumerMetrics:
    """Default metrics sink when no metrics backend is provided."""

    def incr(
        self, name: str, value: int = 1, *, tags: Mapping[str, str] | None = None
    ) -> None:
        _ = name
        _ = value
        _ = tags


@dataclass
class ConsumerConfig:
    """
    Configuration for job consumers.

    Attributes:
        poll_interval_s: Max seconds one claim attempt waits for a job.
        shutdown_timeout_s: Grace period for in-flight jobs on shutdown.
        recover_on_start: Requeue jobs left claimed by dead consumers when
            no other consumer is live (durable backends only).
        presence_ttl_s: Lifetime of a consumer presence entry.
        presence_refresh_s: Presence heartbeat interval.
    """

    poll_interval_s: float = 1.0
    shutdown_timeout_s: float = 30.0
    recover_on_start: bool = True
    presence_ttl_s: float = 30.0
    presence_refresh_s: float = 10.0


class JobConsumer:
    """
    Claims jobs matching one name (or ``WILDCARD``) and runs ``handler``.

    At most ``concurrency`` handlers run at once. A handler that returns
    completes the job; one that raises or exceeds ``options.timeout_s``
    fails the attempt and the queue applies the job's retry policy. Both
    outcomes are reported through the queue's ``completed``/``failed``
    events. A job cancelled by shutdown counts as a failed attempt.
    """

    def __init__(
        self,
        queue: JobQueue,
        name: str,
        handler: JobHandler,
        *,
        concurrency: int = 1,
        config: ConsumerConfig | None = None,
        metrics: ConsumerMetrics | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._queue = queue
        self._name = name
        self._names = None if name == WILDCARD else (name,)
        self._handler = handler
        self._concurrency = concurrency
        self._config = config or ConsumerConfig()
        self._metrics: ConsumerMetrics = metrics or NoOpConsumerMetrics()
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._recovery = queue if isinstance(queue, StrandedJobRecovery) else None
        self._consumer_id = uuid.uuid4().hex
        self._semaphore = asyncio.Semaphore(concurrency)
        self._active_jobs: set[asyncio.Task[None]] = set()

    @property
    def name(self) -> str:
        """Job name this consumer is registered for."""
        return self._name

    @property
    def concurrency(self) -> int:
        """Max jobs handled simultaneously."""
        return self._concurrency

    @property
    def is_running(self) -> bool:
        """Whether the consumer loop is active."""
        return self._running

    @property
    def active_job_count(self) -> int:
        """Number of currently executing jobs."""
        return len(self._active_jobs)

    async def start(self) -> None:
        """Start the consumer loop in the background."""
        if self._running:
            raise RuntimeError("JobConsumer is already running")
        if self._recovery is not None:
            if self._config.presence_ttl_s <= 0:
                raise ValueError("presence_ttl_s must be > 0")
            if not 0 < self._config.presence_refresh_s < self._config.presence_ttl_s:
                raise ValueError("presence_refresh_s must be > 0 and < presence_ttl_s")

        self._running = True
        try:
            await self._register_presence()
            if self._config.recover_on_start and self._recovery is not None:
                moved = await self._recovery.recover_if_sole_consumer(self._consumer_id)
                if moved:
                    self._metrics.incr("tasks_consumer_recovered_total", moved)
        except Exception:
            self._running = False
            await self._unregister_presence()
            raise
        self._task = asyncio.create_task(self._loop())
        if self._recovery is not None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat())
        logger.info(
            "JobConsumer started (name=%s, concurrency=%d, consumer_id=%s)",
            self._name,
            self._concurrency,
            self._consumer_id[:8],
        )

    async def shutdown(self) -> None:
        """
        Stop claiming jobs and wait for in-flight jobs.

        Jobs still running after ``shutdown_timeout_s`` are cancelled and
        recorded as failed attempts.
        """
        self._running = False

        if self._heartbeat_task and not self._heartbeat_task.done():
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
        self._heartbeat_task = None

        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await asyncio.wait_for(
                    self._task, timeout=self._config.shutdown_timeout_s
                )
            except (asyncio.CancelledError, asyncio.TimeoutError):
                pass
        self._task = None

        if self._active_jobs:
            logger.info("Waiting for %d active jobs...", len(self._active_jobs))
            _, pending = await asyncio.wait(
                self._active_jobs,
                timeout=self._config.shutdown_timeout_s,
            )
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        await self._unregister_presence()
        logger.info("JobConsumer shut down (consumer_id=%s)", self._consumer_id[:8])

    async def _register_presence(self) -> None:
        if self._recovery is None:
            return
        await self._recovery.register_consumer(
            self._consumer_id, ttl_s=self._config.presence_ttl_s
        )

    async def _unregister_presence(self) -> None:
        if self._recovery is None:
            return
        try:
            await self._recovery.unregister_consumer(self._consumer_id)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Consumer presence could not be removed (consumer_id=%s)",
                self._consumer_id[:8],
            )

    async def _heartbeat(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._config.presence_refresh_s)
                if self._running:
                    await self._register_presence()
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Consumer presence heartbeat failed (consumer_id=%s)",
                    self._consumer_id[:8],
                )

    async def _loop(self) -> None:
        """Main claim loop."""
        while self._running:
            permit_acquired = False
            try:
                await self._semaphore.acquire()
                permit_acquired = True
                job = await self._queue.take(
                    self._names,
                    timeout=self._config.poll_interval_s,
                )
                if job is None:
                    continue
                self._metrics.incr("tasks_consumer_dequeued_total", tags={"name": job.name})

                exec_task = asyncio.create_task(self._execute_job(job))
                self._active_jobs.add(exec_task)
                exec_task.add_done_callback(self._job_done)
                permit_acquired = False  # released by _job_done
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Consumer loop error (name=%s)", self._name)
                await asyncio.sleep(self._config.poll_interval_s)
            finally:
                if permit_acquired:
                    self._semaphore.release()

    def _job_done(self, task: asyncio.Task[None]) -> None:
        """Cleanup callback when a job execution completes."""
        self._active_jobs.discard(task)
        self._semaphore.release()

    async def _execute_job(self, job: Job) -> None:
        """Run the handler for one job and record the outcome."""
        try:
            result = await asyncio.wait_for(
                self._handler(job),
                timeout=job.options.timeout_s,
            )
        except asyncio.TimeoutError as exc:
            self._metrics.incr("tasks_consumer_timeout_total", tags={"name": job.name})
            logger.warning(
                "Job %s timed out after %ss (name=%s)",
                job.id[:8],
                job.options.timeout_s,
                job.name,
            )
            await self._record_failure(
                job, error=f"Job timed out after {job.options.timeout_s}s", exc=exc
            )
            return
        except asyncio.CancelledError as exc:
            logger.warning("Job %s cancelled by shutdown (name=%s)", job.id[:8], job.name)
            await self._record_failure(job, error="Job cancelled by consumer shutdown", exc=exc)
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("Job %s failed (name=%s)", job.id[:8], job.name)
            await self._record_failure(job, error=str(exc) or type(exc).__name__, exc=exc)
            return

        try:
            finished = await self._queue.complete(job.id, result=result)
        except Exception:  # noqa: BLE001
            logger.exception("Job %s completion could not be recorded", job.id[:8])
            return
        self._metrics.incr("tasks_consumer_completed_total", tags={"name": job.name})
        logger.info("Job %s completed (name=%s)", job.id[:8], job.name)
        await self._queue.emit("completed", finished, result)

    async def _record_failure(self, job: Job, *, error: str, exc: BaseException) -> None:
        try:
            failed = await self._queue.fail(job.id, error=error)
        except Exception:  # noqa: BLE001
            logger.exception("Job %s failure could not be recorded", job.id[:8])
            return
        self._metrics.incr(
            "tasks_consumer_failed_total",
            tags={"name": job.name, "final": str(failed.status == "failed").lower()},
        )
        await self._queue.emit("failed", failed, exc)
