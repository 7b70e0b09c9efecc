"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

Job queue engine types and abstract base.
"""

from __future__ import annotations

import inspect
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, fields, replace
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from ..errors import QueueClosedError
from ..types import JSONValue

if TYPE_CHECKING:
    from .consumer import ConsumerConfig, ConsumerMetrics, JobConsumer

logger = logging.getLogger("backend_store_tasks.engine")

# Consumer name filter matching jobs of every name.
WILDCARD = "*"

JobStatus = Literal["waiting", "delayed", "active", "completed", "failed"]
JobEvent = Literal["completed", "failed"]

# ---------------------------------------------------------------------------
# Job options
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Backoff policy applied between failed attempts of one job."""

    backoff_base_s: float = 0.0
    backoff_max_s: float = 30.0
    backoff_jitter_s: float = 0.0

    def __post_init__(self) -> None:
        if self.backoff_base_s < 0:
            raise ValueError("backoff_base_s must be >= 0")
        if self.backoff_max_s < 0:
            raise ValueError("backoff_max_s must be >= 0")
        if self.backoff_jitter_s < 0:
            raise ValueError("backoff_jitter_s must be >= 0")

    def as_dict(self) -> dict[str, JSONValue]:
        return {
            "backoff_base_s": self.backoff_base_s,
            "backoff_max_s": self.backoff_max_s,
            "backoff_jitter_s": self.backoff_jitter_s,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> RetryPolicy:
        unknown = sorted(set(data) - {f.name for f in fields(cls)})
        if unknown:
            raise ValueError(f"Unknown backoff option(s): {', '.join(unknown)}")
        return cls(**{k: float(v) for k, v in data.items()})


@dataclass(frozen=True, slots=True)
class JobOptions:
    """
    Execution policy of one job.

    Attributes:
        attempts: Total attempts before the job fails permanently.
        timeout_s: Per-attempt execution timeout; ``None`` disables it.
        remove_on_complete: Delete the job record once it completes.
        remove_on_fail: Delete the job record once it fails permanently.
        backoff: Delay policy between attempts; ``None`` retries immediately
            unless the queue carries its own default policy.
    """

    attempts: int = 3
    timeout_s: float | None = 60.0
    remove_on_complete: bool = True
    remove_on_fail: bool = True
    backoff: RetryPolicy | None = None

    def __post_init__(self) -> None:
        if self.attempts < 1:
            raise ValueError("attempts must be >= 1")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ValueError("timeout_s must be > 0 or None")

    def merged(self, overrides: Mapping[str, Any] | None) -> JobOptions:
        """Return a copy with ``overrides`` applied; see ``merge_job_options``."""
        return merge_job_options(self, overrides)

    def as_dict(self) -> dict[str, JSONValue]:
        return {
            "attempts": self.attempts,
            "timeout_s": self.timeout_s,
            "remove_on_complete": self.remove_on_complete,
            "remove_on_fail": self.remove_on_fail,
            "backoff": self.backoff.as_dict() if self.backoff else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> JobOptions:
        return merge_job_options(cls(), data)


def merge_job_options(
    defaults: JobOptions,
    overrides: Mapping[str, Any] | None,
) -> JobOptions:
    """
    Merge per-call overrides over ``defaults`` field by field.

    Keys present in ``overrides`` win; every other field keeps its default.
    ``backoff`` may be given as a ``RetryPolicy`` or as a mapping of its
    fields. Unknown keys raise ``ValueError``.
    """
    if not overrides:
        return defaults
    known = {f.name for f in fields(JobOptions)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ValueError(f"Unknown job option(s): {', '.join(unknown)}")
    values = dict(overrides)
    backoff = values.get("backoff")
    if isinstance(backoff, Mapping):
        values["backoff"] = RetryPolicy.from_dict(backoff)
    return replace(defaults, **values)


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Job:
    """
    A job persisted by the queue engine.

    Attributes:
        name: Routing key consumers filter on.
        data: JSON-safe job data (the store's wire-form job record).
        options: Execution policy fixed at submission time.
        id: Unique job identifier.
        status: Current lifecycle status.
        attempts_made: Number of finished attempts, successful or not.
        result: Handler return value after completion.
        error: Error message of the latest failed attempt.
        created_at: Unix timestamp when the job was added.
        started_at: Unix timestamp when the current attempt started.
        finished_at: Unix timestamp when the job reached a terminal state.
        next_attempt_at: Unix timestamp before which a retry is not run.
    """

    name: str
    data: dict[str, JSONValue]
    options: JobOptions = field(default_factory=JobOptions)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = "waiting"
    attempts_made: int = 0
    result: JSONValue | None = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    finished_at: float | None = None
    next_attempt_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the job has completed or failed permanently."""
        return self.status in ("completed", "failed")

    @property
    def duration_s(self) -> float | None:
        """Duration of the last attempt, or None if not finished."""
        if self.started_at is not None and self.finished_at is not None:
            return self.finished_at - self.started_at
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "data": self.data,
            "options": self.options.as_dict(),
            "id": self.id,
            "status": self.status,
            "attempts_made": self.attempts_made,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "next_attempt_at": self.next_attempt_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Job:
        values = dict(data)
        values["options"] = JobOptions.from_dict(values.get("options") or {})
        return cls(**values)


# Handler invoked for each delivered job.
JobHandler = Callable[[Job], Awaitable[Any]]

# Listener signature: ``listener(job, detail)`` where detail is the handler
# result for ``completed`` and the raised exception for ``failed``.
JobListener = Callable[[Job, Any], Awaitable[None] | None]


# ---------------------------------------------------------------------------
# Queue abstract base
# ---------------------------------------------------------------------------


class JobQueue(ABC):
    """
    Abstract job queue engine.

    Implementations provide persistence (in-memory, Redis, ...). Listener
    registration, close state, and event emission are shared here.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[JobListener]] = {}
        self._closed = False

    @abstractmethod
    async def add(
        self,
        name: str,
        data: Mapping[str, JSONValue],
        options: JobOptions | None = None,
    ) -> Job:
        """
        Persist a new job and make it available to consumers.

        Args:
            name: Routing key; must be non-empty and not the wildcard.
            data: JSON-safe job data.
            options: Execution policy; engine defaults when omitted.

        Returns:
            The accepted job.
        """
        ...

    @abstractmethod
    async def take(
        self,
        names: Sequence[str] | None = None,
        *,
        timeout: float | None = None,
    ) -> Job | None:
        """
        Claim the next runnable job.

        Args:
            names: Accepted job names; ``None`` accepts every name.
            timeout: Max seconds to wait. ``None`` = wait forever.

        Returns:
            The activated job, or ``None`` on timeout.
        """
        ...

    @abstractmethod
    async def complete(self, job_id: str, *, result: JSONValue | None = None) -> Job:
        """Mark one active job as completed and return its final state."""
        ...

    @abstractmethod
    async def fail(self, job_id: str, *, error: str) -> Job:
        """
        Record one failed attempt.

        The job is re-queued while attempts remain, otherwise it moves to
        ``failed``. Returns the job state after the transition.
        """
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Job | None:
        """Return one job by id, or ``None`` when missing or removed."""
        ...

    @abstractmethod
    async def get_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 100,
    ) -> list[Job]:
        """List stored jobs in creation order with optional status filter."""
        ...

    @abstractmethod
    async def process(
        self,
        name: str,
        concurrency: int,
        handler: JobHandler,
        *,
        config: ConsumerConfig | None = None,
        metrics: ConsumerMetrics | None = None,
    ) -> JobConsumer:
        """
        Register and start a consumer for ``name`` (or ``WILDCARD``).

        Args:
            name: Job name to consume, or ``"*"`` for every name.
            concurrency: Max jobs handled simultaneously by this consumer.
            handler: Coroutine function run for each job; raising fails
                the attempt.
        """
        ...

    @abstractmethod
    async def _close_backend(self) -> None:
        """Release backend connections."""

    async def close(self) -> None:
        """
        Stop every consumer of this queue and release the backend.

        Closing twice is a no-op.
        """
        if self._closed:
            return
        self._closed = True
        await self._shutdown_consumers()
        await self._close_backend()
        logger.info("Job queue closed (%s)", type(self).__name__)

    async def _shutdown_consumers(self) -> None:
        """Hook for queues that own consumers."""

    @property
    def closed(self) -> bool:
        """Whether ``close()`` has been called."""
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise QueueClosedError("job queue is closed")

    def on(self, event: JobEvent, listener: JobListener) -> None:
        """Register a ``completed`` or ``failed`` listener."""
        if event not in ("completed", "failed"):
            raise ValueError(f"Unknown job event: {event}")
        self._listeners.setdefault(event, []).append(listener)

    def off(self, event: JobEvent, listener: JobListener) -> None:
        """Remove a previously registered listener."""
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)

    async def emit(self, event: JobEvent, job: Job, detail: Any = None) -> None:
        """
        Notify listeners of one job event.

        Listener errors are logged and never change job state.
        """
        for listener in list(self._listeners.get(event, ())):
            try:
                result = listener(job, detail)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                logger.exception("Job %s %s listener failed", job.id[:8], event)


@runtime_checkable
class StrandedJobRecovery(Protocol):
    """
    Optional queue capability for durable backends.

    Consumers announce themselves with a TTL-backed presence entry. A
    consumer that starts while no other consumer is live puts jobs claimed
    by dead consumers back on their waiting lists.
    """

    async def register_consumer(self, consumer_id: str, *, ttl_s: float) -> None:
        """Mark one consumer live for ``ttl_s`` seconds."""

    async def unregister_consumer(self, consumer_id: str) -> None:
        """Drop one consumer's presence entry."""

    async def recover_if_sole_consumer(self, consumer_id: str) -> int:
        """Requeue claimed jobs when ``consumer_id`` is the only live consumer."""
