# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Recovery of jobs that stopped making progress.

Two kinds of jobs are put back into circulation here:

- stuck jobs: ``processing`` for longer than the stuck threshold, typically
  because the dispatcher crashed or hung mid-send;
- rate-limited jobs: throttled by the provider and past their
  ``next_retry_at``.

Both consume one unit of the job's retry budget. Reclaimed jobs wait out the
policy backoff before they are due again; released jobs are due at once. A
job that has no budget left becomes terminally ``failed`` with
``"max retries exceeded"``.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Sequence

from .logger import get_logger
from .models import MAX_RETRIES_EXCEEDED, EmailJob, EmailStatus, RetryResult
from .persistence import QueueStore
from .retry import RetryPolicy


class StuckJobReclaimer:
    """Moves abandoned jobs back to ``pending`` or to terminal ``failed``."""

    def __init__(
        self,
        store: QueueStore,
        *,
        policy: RetryPolicy | None = None,
        metrics=None,
        clock: Callable[[], float] | None = None,
        logger=None,
    ):
        self.store = store
        self.policy = policy or RetryPolicy()
        self.metrics = metrics
        self._clock = clock or time.time
        self.logger = logger or get_logger("StuckJobReclaimer")

    async def retry_stuck_emails(self, max_age_minutes: float | None = None) -> list[RetryResult]:
        """Reclaim every job stuck in ``processing``.

        Args:
            max_age_minutes: Age threshold; defaults to the policy's
                ``stuck_threshold_minutes``.

        Returns:
            One result per job this call moved, with its new status and
            ``retry_count``. An empty list means nothing was stuck.
        """
        if max_age_minutes is None:
            max_age_minutes = self.policy.stuck_threshold_minutes
        if max_age_minutes < 0:
            raise ValueError("max_age_minutes must be >= 0")
        now = self._clock()
        stuck = await self.store.fetch_stuck(older_than=now - float(max_age_minutes) * 60.0)
        results = await self._requeue_all(stuck, now=now, event_type="reclaimed")
        if results:
            self.logger.info(
                "Reclaimed %d stuck email(s) (older than %s min)", len(results), max_age_minutes
            )
        return results

    async def release_rate_limited(self) -> list[RetryResult]:
        """Return throttled jobs whose wait is over to ``pending``."""
        now = self._clock()
        due = await self.store.fetch_rate_limited_due(now=now)
        results = await self._requeue_all(due, now=now, event_type="released", backoff=False)
        if results:
            self.logger.info("Released %d rate-limited email(s)", len(results))
        return results

    async def _requeue_all(
        self, jobs: Sequence[EmailJob], *, now: float, event_type: str, backoff: bool = True
    ) -> list[RetryResult]:
        results: list[RetryResult] = []
        for job in jobs:
            result = await self._requeue(job, now=now, event_type=event_type, backoff=backoff)
            if result is not None:
                results.append(result)
        return results

    async def _requeue(self, job: EmailJob, *, now: float, event_type: str, backoff: bool) -> RetryResult | None:
        if self.policy.is_exhausted(job.retry_count, job.max_retries):
            if not await self.store.fail_exhausted(job, now=now):
                return None  # another reclaimer got there first
            self.logger.warning(
                "Email %s (school=%s) failed: %s after %d retries",
                job.id,
                job.school_id,
                MAX_RETRIES_EXCEEDED,
                job.retry_count,
            )
            await self.store.log_event(
                job.id,
                "failed",
                {"error": MAX_RETRIES_EXCEEDED, "previous_status": job.status.value, "retry_count": job.retry_count},
                now=now,
            )
            if self.metrics is not None:
                self.metrics.inc_exhausted(job.school_id)
            return RetryResult(
                email_id=job.id,
                school_id=job.school_id,
                retry_count=job.retry_count,
                status=EmailStatus.FAILED,
            )

        # Throttled jobs already waited out rate_limited_delay.
        scheduled_at = self.policy.next_retry_at(job.retry_count, now) if backoff else now
        if not await self.store.requeue(job, now=now, scheduled_at=scheduled_at):
            return None
        new_count = job.retry_count + 1
        await self.store.log_event(
            job.id,
            event_type,
            {"previous_status": job.status.value, "retry_count": new_count, "scheduled_at": scheduled_at},
            now=now,
        )
        if self.metrics is not None and event_type == "reclaimed":
            self.metrics.inc_reclaimed(job.school_id)
        return RetryResult(
            email_id=job.id,
            school_id=job.school_id,
            retry_count=new_count,
            status=EmailStatus.PENDING,
        )
