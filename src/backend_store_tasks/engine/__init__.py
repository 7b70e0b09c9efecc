"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

Job queue engine used by the store tasks plugin.

Provides a ``JobQueue`` abstraction for adding named jobs, consuming them by
name or wildcard with bounded concurrency, retrying failed attempts, and
reporting ``completed``/``failed`` events.
"""

from .base import BaseJobQueue
from .consumer import ConsumerConfig, ConsumerMetrics, JobConsumer, NoOpConsumerMetrics
from .factory import create_job_queue, create_job_queue_from_env
from .memory import InMemoryJobQueue
from .metrics import PrometheusConsumerMetrics
from .types import (
    WILDCARD,
    Job,
    JobEvent,
    JobHandler,
    JobListener,
    JobOptions,
    JobQueue,
    JobStatus,
    RetryPolicy,
    merge_job_options,
)

__all__ = [
    "WILDCARD",
    "Job",
    "JobEvent",
    "JobHandler",
    "JobListener",
    "JobOptions",
    "JobQueue",
    "JobStatus",
    "RetryPolicy",
    "merge_job_options",
    "BaseJobQueue",
    "InMemoryJobQueue",
    "JobConsumer",
    "ConsumerConfig",
    "ConsumerMetrics",
    "NoOpConsumerMetrics",
    "PrometheusConsumerMetrics",
    "create_job_queue",
    "create_job_queue_from_env",
]


# Lazy import for Redis queue
def __getattr__(name: str):
    """Lazily expose optional queue backends that require extra dependencies."""
    if name == "RedisJobQueue":
        from .redis_queue import RedisJobQueue

        return RedisJobQueue
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
