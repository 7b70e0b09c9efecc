"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

Error hierarchy for task creation and consumption.
"""

from __future__ import annotations


class TasksError(RuntimeError):
    """Base error for the store tasks plugin."""


class SerializationError(TasksError):
    """Raised when a job payload or context cannot be encoded."""


class EngineSubmissionError(TasksError):
    """Raised when the queue engine rejects a job or a consumer registration."""


class QueueClosedError(EngineSubmissionError):
    """Raised when a closed queue is asked to accept or process jobs."""


class HandlerExecutionError(TasksError):
    """
    Raised when a dispatched job's handler fails.

    The engine records it as the job failure and applies the job's retry
    policy. The handler's own exception is available as ``__cause__``.
    """

    def __init__(self, message: str, *, method: str, job_id: str) -> None:
        super().__init__(message)
        self.method = method
        self.job_id = job_id
