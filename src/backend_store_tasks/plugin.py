"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

Store tasks plugin: producer, consumer dispatcher, and lifecycle controller.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .config import TasksPluginOptions
from .encoder import TaskEncoder, build_default_job_options
from .engine.consumer import ConsumerConfig, ConsumerMetrics, JobConsumer
from .engine.factory import create_job_queue
from .engine.types import WILDCARD, Job, JobQueue
from .errors import HandlerExecutionError
from .store import MiddlewareContext, Next, Store, TaskCreator
from .types import JobRecord

logger = logging.getLogger("backend_store_tasks.plugin")


class TasksPlugin:
    """
    Task-queue capabilities attached to one store.

    Owns the queue shared by every producer and consumer call on that store.
    Using a plugin after ``stop_processing_tasks()`` is a caller error; the
    queue raises ``QueueClosedError`` for new jobs and consumers.
    """

    def __init__(
        self,
        store: Store,
        *,
        queue: JobQueue,
        encoder: TaskEncoder | None = None,
        consumer_config: ConsumerConfig | None = None,
        metrics: ConsumerMetrics | None = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._encoder = encoder or TaskEncoder()
        self._consumer_config = consumer_config
        self._metrics = metrics

    @property
    def store(self) -> Store:
        return self._store

    @property
    def task_queue(self) -> JobQueue:
        """Queue shared by all producer and consumer calls."""
        return self._queue

    @property
    def encoder(self) -> TaskEncoder:
        return self._encoder

    async def create_task(
        self,
        method: str,
        payload: Any = None,
        context: Any = None,
        *,
        cid: str | None = None,
        job_options: Mapping[str, Any] | None = None,
    ) -> Job:
        """
        Queue a job that runs ``method`` with ``payload`` on a worker.

        Args:
            method: Store method to dispatch on the worker.
            payload: JSON-safe payload passed to the handler.
            context: Request context; ``transform_context`` is applied first.
            cid: Correlation id stored with the job.
            job_options: Per-job overrides of the default job options.

        Returns:
            The job accepted by the queue.

        Raises:
            SerializationError: payload or context is circular.
            EngineSubmissionError: the queue rejected the job.
        """
        record, options = self._encoder.encode(
            method,
            payload=payload,
            context=context,
            cid=cid,
            job_options=job_options,
        )
        job = await self._queue.add(record.method, record.to_dict(), options)
        logger.debug("Task %s created (method=%s, cid=%s)", job.id[:8], method, cid)
        return job

    def bind_create_task(self, context: Any, cid: str | None) -> TaskCreator:
        """Return a ``create_task`` bound to one dispatch's context and cid."""

        async def create_task(
            method: str,
            payload: Any = None,
            *,
            job_options: Mapping[str, Any] | None = None,
        ) -> Job:
            return await self.create_task(
                method,
                payload,
                context,
                cid=cid,
                job_options=job_options,
            )

        return create_task

    async def middleware(
        self,
        payload: Any,
        middleware_context: MiddlewareContext,
        next: Next,  # noqa: A002
    ) -> Any:
        """Install a per-dispatch ``create_task`` on the method context."""
        middleware_context.method_context.create_task = self.bind_create_task(
            middleware_context.context,
            middleware_context.cid,
        )
        return await next(payload)

    async def process_tasks(
        self,
        method: str = WILDCARD,
        *,
        concurrency: int = 1,
    ) -> JobConsumer:
        """
        Consume jobs of ``method`` (``"*"`` for all) by re-dispatching them.

        Each call registers an independent consumer. ``concurrency`` bounds
        how many jobs of this registration run at once.

        Raises:
            ValueError: ``concurrency`` is below 1. Zero is rejected rather
                than read as "use the default".
            QueueClosedError: ``stop_processing_tasks()`` already ran.
        """
        consumer = await self._queue.process(
            method,
            concurrency,
            self._process_job,
            config=self._consumer_config,
            metrics=self._metrics,
        )
        logger.info("Processing tasks (method=%s, concurrency=%d)", method, concurrency)
        return consumer

    async def _process_job(self, job: Job) -> None:
        """
        Dispatch one delivered job through the store.

        The stored cid is not forwarded: the worker's dispatch assigns its
        own correlation id.
        """
        record = JobRecord.from_dict(job.data)
        try:
            await self._store.dispatch(record.method, record.payload, record.context)
        except Exception as exc:
            raise HandlerExecutionError(
                f"Task '{record.method}' failed: {exc}",
                method=record.method,
                job_id=job.id,
            ) from exc

    async def stop_processing_tasks(self) -> None:
        """Stop all consumers and close the queue connection."""
        await self._queue.close()

    async def __aenter__(self) -> TasksPlugin:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop_processing_tasks()


def install(
    store: Store,
    options: TasksPluginOptions | None = None,
) -> TasksPlugin:
    """
    Attach task-queue capabilities to ``store``.

    Builds the queue and encoder from ``options``, registers the middleware
    that exposes ``method_context.create_task`` to every handler, and
    returns the plugin that owns the queue.
    """
    options = options or TasksPluginOptions()
    queue = options.queue
    if queue is None:
        queue = create_job_queue(options.redis_url, **options.queue_options)
    encoder = TaskEncoder(
        default_job_options=build_default_job_options(options.default_job_options),
        transform_context=options.transform_context,
    )
    plugin = TasksPlugin(
        store,
        queue=queue,
        encoder=encoder,
        consumer_config=options.consumer_config,
        metrics=options.metrics,
    )
    store.use(plugin.middleware)
    logger.info("Store tasks plugin installed (queue=%s)", type(queue).__name__)
    return plugin
