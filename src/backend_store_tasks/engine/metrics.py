"""
MIT License
Copyright (c) 2026 backend-store-tasks contributors
See LICENSE file for full license text.

Prometheus counters for job consumers.
"""

from __future__ import annotations

from collections.abc import Mapping

from prometheus_client import REGISTRY, CollectorRegistry, Counter

# metric name -> (label names, help text)
CONSUMER_COUNTERS: dict[str, tuple[tuple[str, ...], str]] = {
    "tasks_consumer_dequeued_total": (
        ("name",),
        "Jobs claimed by a consumer.",
    ),
    "tasks_consumer_completed_total": (
        ("name",),
        "Jobs whose handler returned.",
    ),
    "tasks_consumer_failed_total": (
        ("name", "final"),
        "Failed job attempts; final=true when no retry remains.",
    ),
    "tasks_consumer_timeout_total": (
        ("name",),
        "Job attempts that exceeded their timeout.",
    ),
    "tasks_consumer_recovered_total": (
        (),
        "Jobs left claimed by dead consumers and put back on a waiting list.",
    ),
}


class PrometheusConsumerMetrics:
    """
    ``ConsumerMetrics`` sink that feeds a fixed set of Prometheus counters.

    All counters are registered up front so they show up at zero before the
    first job runs. Tags missing from an ``incr`` call are exported as an
    empty label value; tags outside a counter's label set are ignored.
    """

    def __init__(
        self,
        *,
        namespace: str = "store",
        registry: CollectorRegistry | None = None,
    ) -> None:
        registry = REGISTRY if registry is None else registry
        self._counters = {
            name: Counter(
                name,
                documentation,
                labelnames=labels,
                namespace=namespace,
                registry=registry,
            )
            for name, (labels, documentation) in CONSUMER_COUNTERS.items()
        }

    def incr(self, name: str, value: int = 1, *, tags: Mapping[str, str] | None = None) -> None:
        counter = self._counters.get(name)
        if counter is None:
            raise ValueError(f"Unknown consumer metric: {name}")
        labels = CONSUMER_COUNTERS[name][0]
        if labels:
            tags = tags or {}
            counter = counter.labels(*(str(tags.get(label, "")) for label in labels))
        counter.inc(value)
