"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

Task encoder: builds job records and effective job options from call arguments.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from .engine.types import JobOptions, merge_job_options
from .errors import SerializationError
from .types import ContextTransform, JobRecord

_CIRCULAR_HINT = (
    "Use the transform_context option to keep only the serializable parts "
    "of the context and avoid circular references."
)


def identity_context(context: Any) -> Any:
    """Default context transform."""
    return context


def build_default_job_options(overrides: Mapping[str, Any] | None = None) -> JobOptions:
    """Return built-in job defaults with process-wide ``overrides`` applied."""
    return merge_job_options(JobOptions(), overrides)


class TaskEncoder:
    """
    Shapes ``(method, payload, context, cid)`` into a ``JobRecord``.

    ``transform_context`` is applied to every non-null context before it is
    embedded in a record. It must not have side effects; this is not
    enforced.
    """

    def __init__(
        self,
        *,
        default_job_options: JobOptions | None = None,
        transform_context: ContextTransform | None = None,
    ) -> None:
        self._default_job_options = default_job_options or JobOptions()
        self._transform_context = transform_context or identity_context

    @property
    def default_job_options(self) -> JobOptions:
        return self._default_job_options

    def encode(
        self,
        method: str,
        payload: Any = None,
        context: Any = None,
        cid: str | None = None,
        job_options: Mapping[str, Any] | None = None,
    ) -> tuple[JobRecord, JobOptions]:
        """
        Build the job record and the effective job options for one task.

        Raises:
            ValueError: ``method`` is empty or ``job_options`` has unknown keys.
            SerializationError: payload or context contains a circular
                reference.
        """
        if not isinstance(method, str) or not method.strip():
            raise ValueError("method must be a non-empty string")
        if context is not None:
            context = self._transform_context(context)

        record = JobRecord(method=method, payload=payload, context=context, cid=cid)
        options = merge_job_options(self._default_job_options, job_options)
        self.serialize(record)
        return record, options

    @staticmethod
    def serialize(record: JobRecord) -> str:
        """
        Encode a record to JSON.

        Circular structures raise ``SerializationError``; every other
        encoding error propagates unchanged.
        """
        try:
            return json.dumps(record.to_dict())
        except ValueError as exc:
            if "circular reference" not in str(exc).lower():
                raise
            raise SerializationError(
                f"Error during serialization of payload or context: {exc}. {_CIRCULAR_HINT}"
            ) from exc
