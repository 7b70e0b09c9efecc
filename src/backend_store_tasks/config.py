"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

Plugin configuration.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .engine.consumer import ConsumerConfig, ConsumerMetrics
from .engine.factory import env_first
from .engine.types import JobQueue
from .types import ContextTransform


@dataclass
class TasksPluginOptions:
    """
    Options recognized by ``install``.

    Attributes:
        redis_url: Redis connection URL; selects the Redis backend.
        queue_options: Keyword arguments for the queue constructor
            (``prefix``, ``retry_backoff_base_s``, ...).
        default_job_options: Process-wide overrides of the built-in job
            defaults (``attempts``, ``timeout_s``, ``remove_on_complete``,
            ``remove_on_fail``, ``backoff``).
        transform_context: Projection applied to contexts before storage.
        queue: Pre-built queue; takes precedence over ``redis_url``.
        consumer_config: Poll/shutdown settings for ``process_tasks``.
        metrics: Metrics sink for consumers.
    """

    redis_url: str | None = None
    queue_options: dict[str, Any] = field(default_factory=dict)
    default_job_options: dict[str, Any] = field(default_factory=dict)
    transform_context: ContextTransform | None = None
    queue: JobQueue | None = None
    consumer_config: ConsumerConfig | None = None
    metrics: ConsumerMetrics | None = None


def options_from_env(**overrides: Any) -> TasksPluginOptions:
    """
    Build plugin options from `STORE_TASKS_*` environment variables.

    - `STORE_TASKS_REDIS_URL` (or `REDIS_URL`): Redis URL; in-memory if unset.
    - `STORE_TASKS_QUEUE_PREFIX`: Redis key prefix.
    - `STORE_TASKS_JOB_ATTEMPTS`, `STORE_TASKS_JOB_TIMEOUT_S`: job defaults.

    Keyword `overrides` are applied last.
    """
    queue_options: dict[str, Any] = {}
    prefix = env_first("STORE_TASKS_QUEUE_PREFIX")
    if prefix:
        queue_options["prefix"] = prefix

    default_job_options: dict[str, Any] = {}
    attempts = env_first("STORE_TASKS_JOB_ATTEMPTS")
    if attempts:
        default_job_options["attempts"] = int(attempts)
    timeout_s = env_first("STORE_TASKS_JOB_TIMEOUT_S")
    if timeout_s:
        default_job_options["timeout_s"] = float(timeout_s)

    options = TasksPluginOptions(
        redis_url=env_first("STORE_TASKS_REDIS_URL", "REDIS_URL"),
        queue_options=queue_options,
        default_job_options=default_job_options,
    )
    for key, value in overrides.items():
        if not hasattr(options, key):
            raise TypeError(f"Unknown plugin option: {key}")
        setattr(options, key, value)
    return options
