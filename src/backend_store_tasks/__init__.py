"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

Task-queue plugin for request-dispatch stores.

Lets application code queue named jobs (method + payload + context + cid)
and lets workers run them by re-entering the store's own ``dispatch``.

Quick start::

    from backend_store_tasks import TasksPluginOptions, install

    tasks = install(store, TasksPluginOptions(redis_url="redis://localhost:6379/0"))
    await tasks.create_task("send_email", {"to": "a@example.com"}, context)

    # inside any store handler
    await method_context.create_task("send_email", {"to": "b@example.com"})

    # on a worker
    await tasks.process_tasks("*", concurrency=4)
    ...
    await tasks.stop_processing_tasks()
"""

from .config import TasksPluginOptions, options_from_env
from .encoder import TaskEncoder, build_default_job_options, identity_context
from .engine import (
    WILDCARD,
    ConsumerConfig,
    InMemoryJobQueue,
    Job,
    JobConsumer,
    JobOptions,
    JobQueue,
    RetryPolicy,
    create_job_queue,
    merge_job_options,
)
from .errors import (
    EngineSubmissionError,
    HandlerExecutionError,
    QueueClosedError,
    SerializationError,
    TasksError,
)
from .plugin import TasksPlugin, install
from .store import MethodContext, Middleware, MiddlewareContext, Store, TaskCreator
from .types import ContextTransform, JobRecord

__all__ = [
    "install",
    "TasksPlugin",
    "TasksPluginOptions",
    "options_from_env",
    "TaskEncoder",
    "build_default_job_options",
    "identity_context",
    "JobRecord",
    "ContextTransform",
    "Store",
    "MethodContext",
    "MiddlewareContext",
    "Middleware",
    "TaskCreator",
    "WILDCARD",
    "Job",
    "JobOptions",
    "JobQueue",
    "RetryPolicy",
    "merge_job_options",
    "InMemoryJobQueue",
    "JobConsumer",
    "ConsumerConfig",
    "create_job_queue",
    "TasksError",
    "SerializationError",
    "EngineSubmissionError",
    "QueueClosedError",
    "HandlerExecutionError",
]


# Lazy import for Redis queue
def __getattr__(name: str):
    """Lazily expose optional queue backends that require extra dependencies."""
    if name == "RedisJobQueue":
        from .engine.redis_queue import RedisJobQueue

        return RedisJobQueue
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
