"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

Factory helpers for selecting job queue backends.
"""

from __future__ import annotations

import os
from typing import Any

from .memory import InMemoryJobQueue
from .types import JobQueue


def env_first(*names: str, default: str | None = None) -> str | None:
    """
    Return the first non-empty environment variable in `names`.

    Args:
        *names: Environment variable names to check in order.
        default: Value returned if no non-empty variable is found.
    """
    for name in names:
        raw = os.getenv(name)
        if raw is None:
            continue
        value = raw.strip()
        if value:
            return value
    return default


def create_job_queue(
    redis_url: str | None = None,
    *,
    redis_client: Any | None = None,
    **queue_options: Any,
) -> JobQueue:
    """
    Create a job queue backend.

    - Uses `RedisJobQueue` when `redis_client` or `redis_url` is given.
    - Otherwise returns an `InMemoryJobQueue`.

    `queue_options` are passed to the backend constructor (`prefix`,
    `idle_poll_s`, `retry_backoff_base_s`, ...). `prefix` and `idle_poll_s`
    are ignored by the in-memory backend.
    """
    if redis_client is None and not redis_url:
        queue_options.pop("prefix", None)
        queue_options.pop("idle_poll_s", None)
        return InMemoryJobQueue(**queue_options)

    from .redis_queue import RedisJobQueue

    client = redis_client
    if client is None:
        try:
            import redis.asyncio as redis
        except ModuleNotFoundError as exc:  # pragma: no cover
            raise RuntimeError(
                "Redis job queue requires `redis` to be installed."
            ) from exc
        client = redis.Redis.from_url(redis_url)

    return RedisJobQueue(client, **queue_options)


def create_job_queue_from_env(*, redis_client: Any | None = None) -> JobQueue:
    """
    Create a job queue backend from `STORE_TASKS_*` environment variables.

    Backends:
    - `inmemory` (default when no Redis URL is configured)
    - `redis`

    Redis resolution:
    - Uses the provided `redis_client` when supplied.
    - Otherwise builds a client from `STORE_TASKS_REDIS_URL` (or `REDIS_URL`).
    - If no URL is set, falls back to host/port/db/password variables.
    """
    url = env_first("STORE_TASKS_REDIS_URL", "REDIS_URL")
    default_backend = "redis" if url or redis_client is not None else "inmemory"
    backend = (env_first("STORE_TASKS_BACKEND", default=default_backend) or "").lower()
    queue_options: dict[str, Any] = {
        "retry_backoff_base_s": float(
            env_first("STORE_TASKS_RETRY_BACKOFF_BASE_S", default="0") or "0"
        ),
        "retry_backoff_max_s": float(
            env_first("STORE_TASKS_RETRY_BACKOFF_MAX_S", default="30") or "30"
        ),
        "retry_backoff_jitter_s": float(
            env_first("STORE_TASKS_RETRY_BACKOFF_JITTER_S", default="0") or "0"
        ),
    }

    if backend in ("mem", "memory", "inmemory", "in_memory"):
        return InMemoryJobQueue(**queue_options)

    if backend in ("redis",):
        queue_options["prefix"] = (
            env_first("STORE_TASKS_QUEUE_PREFIX", default="store-tasks") or "store-tasks"
        )
        if redis_client is None and not url:
            host = env_first("STORE_TASKS_REDIS_HOST", default="localhost") or "localhost"
            port = env_first("STORE_TASKS_REDIS_PORT", default="6379") or "6379"
            db = env_first("STORE_TASKS_REDIS_DB", default="0") or "0"
            password = env_first("STORE_TASKS_REDIS_PASSWORD", default="") or ""
            if password:
                url = f"redis://:{password}@{host}:{port}/{db}"
            else:
                url = f"redis://{host}:{port}/{db}"
        return create_job_queue(url, redis_client=redis_client, **queue_options)

    raise ValueError(f"Unknown STORE_TASKS_BACKEND: {backend}")
