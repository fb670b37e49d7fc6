# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-school queue health monitoring.

Each pass reads pending, stuck and failed counters for every school that has
jobs, derives a health status, and appends one snapshot per school to
``email_queue_health``. The read happens in a single statement before
anything is written, and all snapshots of a pass are inserted together, so a
failed read leaves no partial pass behind.

The monitor does not notify anyone. Callers receive the snapshots and can
feed them to :func:`summarize_health` for alerting.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from .logger import get_logger
from .models import HealthSnapshot, HealthStatus
from .persistence import QueueStore

DEFAULT_BACKLOG_WARNING = 50
DEFAULT_FAILED_CRITICAL = 10


@dataclass(frozen=True)
class HealthThresholds:
    """Limits used to classify a school's queue.

    Attributes:
        backlog_warning: More pending jobs than this is a warning.
        failed_critical: More failed jobs than this is critical.
        stuck_threshold_minutes: Age after which ``processing`` counts as stuck.
        processing_window_hours: Window for the average processing time.
    """

    backlog_warning: int = DEFAULT_BACKLOG_WARNING
    failed_critical: int = DEFAULT_FAILED_CRITICAL
    stuck_threshold_minutes: float = 10
    processing_window_hours: float = 24


def derive_health_status(
    pending_count: int,
    stuck_count: int,
    failed_count: int,
    thresholds: HealthThresholds | None = None,
) -> HealthStatus:
    """Classify one school's counters.

    Any stuck job, or a failure count above ``failed_critical``, is critical.
    Otherwise a backlog above ``backlog_warning`` is a warning.
    """
    thresholds = thresholds or HealthThresholds()
    if stuck_count > 0 or failed_count > thresholds.failed_critical:
        return HealthStatus.CRITICAL
    if pending_count > thresholds.backlog_warning:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def summarize_health(snapshots: Iterable[HealthSnapshot]) -> dict[str, Any]:
    """Count schools per status and list the ones needing attention."""
    summary: dict[str, Any] = {status.value: 0 for status in HealthStatus}
    attention: list[dict[str, Any]] = []
    for snapshot in snapshots:
        summary[snapshot.health_status.value] += 1
        if snapshot.health_status is not HealthStatus.HEALTHY:
            attention.append({"school_id": snapshot.school_id, "health_status": snapshot.health_status.value})
    summary["schools"] = attention
    return summary


class HealthMonitor:
    """Computes and persists queue health snapshots."""

    def __init__(
        self,
        store: QueueStore,
        *,
        thresholds: HealthThresholds | None = None,
        metrics=None,
        clock: Callable[[], float] | None = None,
        logger=None,
    ):
        self.store = store
        self.thresholds = thresholds or HealthThresholds()
        self.metrics = metrics
        self._clock = clock or time.time
        self.logger = logger or get_logger("HealthMonitor")

    async def check_queue_health(self) -> list[HealthSnapshot]:
        """Run one health pass.

        Returns:
            One snapshot per school with any job, in ``school_id`` order.
            Empty when the queue has never held a job.

        Raises:
            Exception: Whatever the store raises while reading; nothing has
                been persisted in that case.
        """
        now = self._clock()
        counters = await self.store.aggregate_health(
            stuck_before=now - self.thresholds.stuck_threshold_minutes * 60.0,
            sent_since=now - self.thresholds.processing_window_hours * 3600.0,
        )
        snapshots = [
            HealthSnapshot(
                school_id=row["school_id"],
                check_timestamp=now,
                pending_count=row["pending_count"],
                stuck_count=row["stuck_count"],
                failed_count=row["failed_count"],
                processing_time_avg_ms=row["processing_time_avg_ms"],
                health_status=derive_health_status(
                    row["pending_count"], row["stuck_count"], row["failed_count"], self.thresholds
                ),
            )
            for row in counters
        ]
        if snapshots:
            await self.store.insert_health_snapshots(snapshots, now=now)

        summary = summarize_health(snapshots)
        if self.metrics is not None:
            for snapshot in snapshots:
                self.metrics.set_health(snapshot.school_id, snapshot.health_status.value)
        if summary["critical"]:
            self.logger.warning(
                "Email queue critical for %d school(s): %s",
                summary["critical"],
                ", ".join(s["school_id"] for s in summary["schools"] if s["health_status"] == "critical"),
            )
        else:
            self.logger.debug(
                "Health check: %d healthy, %d warning", summary["healthy"], summary["warning"]
            )
        return snapshots
