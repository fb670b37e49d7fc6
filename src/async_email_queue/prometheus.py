# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for the email queue.

All metrics use the ``emq_`` prefix and live in a private registry so that
several cores (e.g. in tests) never collide.

Metrics exposed:
    - ``emq_sent_total``: Emails delivered, per school.
    - ``emq_failed_total``: Send failures, per school.
    - ``emq_rate_limited_total``: Sends throttled by the provider, per school.
    - ``emq_reclaimed_total``: Stuck jobs put back to pending, per school.
    - ``emq_exhausted_total``: Jobs failed because their retry budget ran out.
    - ``emq_pending_jobs``: Jobs currently waiting in ``pending``.
    - ``emq_queue_health_status``: Last health status per school
      (0 healthy, 1 warning, 2 critical).

Example:
    Accessing metrics via the REST API::

        GET /metrics
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

HEALTH_STATUS_VALUES = {"healthy": 0, "warning": 1, "critical": 2}


class QueueMetrics:
    """Prometheus collector for the email queue.

    Attributes:
        registry: The CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional registry. A new one is created when omitted.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "emq_sent_total",
            "Total sent emails",
            ["school_id"],
            registry=self.registry,
        )
        self.failed = Counter(
            "emq_failed_total",
            "Total failed sends",
            ["school_id"],
            registry=self.registry,
        )
        self.rate_limited = Counter(
            "emq_rate_limited_total",
            "Total sends throttled by the provider",
            ["school_id"],
            registry=self.registry,
        )
        self.reclaimed = Counter(
            "emq_reclaimed_total",
            "Total stuck jobs returned to pending",
            ["school_id"],
            registry=self.registry,
        )
        self.exhausted = Counter(
            "emq_exhausted_total",
            "Total jobs failed after exhausting their retry budget",
            ["school_id"],
            registry=self.registry,
        )
        self.pending = Gauge(
            "emq_pending_jobs",
            "Current pending jobs",
            registry=self.registry,
        )
        self.health = Gauge(
            "emq_queue_health_status",
            "Last queue health status (0 healthy, 1 warning, 2 critical)",
            ["school_id"],
            registry=self.registry,
        )

    def inc_sent(self, school_id: str) -> None:
        self.sent.labels(school_id=school_id or "unknown").inc()

    def inc_failed(self, school_id: str) -> None:
        self.failed.labels(school_id=school_id or "unknown").inc()

    def inc_rate_limited(self, school_id: str) -> None:
        self.rate_limited.labels(school_id=school_id or "unknown").inc()

    def inc_reclaimed(self, school_id: str) -> None:
        self.reclaimed.labels(school_id=school_id or "unknown").inc()

    def inc_exhausted(self, school_id: str) -> None:
        self.exhausted.labels(school_id=school_id or "unknown").inc()

    def set_pending(self, value: int) -> None:
        self.pending.set(value)

    def set_health(self, school_id: str, status: str) -> None:
        """Record the latest health status for a school.

        Args:
            school_id: The school the snapshot belongs to.
            status: ``healthy``, ``warning`` or ``critical``.
        """
        self.health.labels(school_id=school_id or "unknown").set(HEALTH_STATUS_VALUES.get(status, 0))

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
