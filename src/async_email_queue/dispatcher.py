# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Batch dispatch of due emails.

The dispatcher is the only component that calls the transport and the only
one that moves jobs out of ``pending``. One pass:

1. selects up to ``batch_size`` eligible jobs, oldest ``created_at`` first;
2. for each job, in order and one at a time: claims it with a conditional
   ``pending -> processing`` update (a lost claim is skipped), waits for the
   global send permit, sends, and records ``sent``, ``rate_limited`` or
   ``failed``.

A failure of a single send never aborts the pass. Failures of the store do:
they propagate to the caller, and any job left in ``processing`` is picked
up later by the stuck-job reclaimer.
"""

from __future__ import annotations

import time
from collections.abc import Callable

from .logger import get_logger
from .models import BatchResult, DispatchOutcome, EmailJob, EmailStatus
from .persistence import QueueStore
from .rate_limit import SendRateLimiter
from .retry import RetryPolicy
from .transport import EmailTransport, TransportError, TransportRateLimitError

DEFAULT_BATCH_SIZE = 10


class BatchDispatcher:
    """Sends due jobs through the transport under the global send permit.

    Attributes:
        store: Queue storage.
        transport: Outbound email transport.
        limiter: Shared send-spacing limiter.
        policy: Retry policy (for the rate-limited delay).
    """

    def __init__(
        self,
        store: QueueStore,
        transport: EmailTransport,
        *,
        limiter: SendRateLimiter | None = None,
        policy: RetryPolicy | None = None,
        metrics=None,
        clock: Callable[[], float] | None = None,
        logger=None,
        from_address: str | None = None,
        log_delivery_activity: bool = False,
    ):
        self.store = store
        self.transport = transport
        self._clock = clock or time.time
        self.limiter = limiter or SendRateLimiter(clock=self._clock)
        self.policy = policy or RetryPolicy()
        self.metrics = metrics
        self.logger = logger or get_logger("BatchDispatcher")
        self.from_address = from_address
        self._log_delivery_activity = bool(log_delivery_activity)

    async def process_batch(self, batch_size: int = DEFAULT_BATCH_SIZE) -> BatchResult:
        """Run one dispatch pass.

        Args:
            batch_size: Maximum number of jobs to consider.

        Returns:
            Counts of sent, failed (including rate-limited) and skipped jobs
            plus one detail entry per job that was attempted.

        Raises:
            ValueError: If ``batch_size`` is not positive.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        jobs = await self.store.fetch_due(limit=batch_size, now=self._clock())
        result = BatchResult()
        if not jobs:
            return result

        self.limiter.observe(await self.store.latest_sent_at())
        for job in jobs:
            if not await self.store.claim(job.id, now=self._clock()):
                self.logger.debug("Email %s already claimed, skipping", job.id)
                result.skipped_count += 1
                continue
            outcome = await self._dispatch(job)
            if outcome is None:
                result.skipped_count += 1
                continue
            result.details.append(outcome)
            if outcome.status is EmailStatus.SENT:
                result.processed_count += 1
            else:
                result.failed_count += 1

        self.logger.info(
            "Dispatch pass: %d sent, %d failed, %d skipped",
            result.processed_count,
            result.failed_count,
            result.skipped_count,
        )
        return result

    async def _dispatch(self, job: EmailJob) -> DispatchOutcome | None:
        """Send one claimed job and record its outcome.

        Returns None when the row left ``processing`` while the send was in
        flight (e.g. reclaimed as stuck); nothing is recorded for it then.
        """
        recipients = job.recipients
        if self._log_delivery_activity:
            self.logger.info(
                "Attempting delivery for email %s to %s (school=%s)", job.id, job.recipient_email, job.school_id
            )
        try:
            if not recipients:
                raise TransportError("No valid recipient address")
            async with self.limiter.permit():
                provider_id = await self.transport.send(recipients, job.subject, job.body, self.from_address)
                sent_at = self._clock()
        except TransportRateLimitError as exc:
            return await self._record_rate_limited(job, exc)
        except Exception as exc:
            return await self._record_failure(job, exc)

        if not await self.store.mark_sent(job.id, sent_at=sent_at, provider_message_id=provider_id):
            self._log_lost(job, "sent")
            return None
        await self.store.log_event(
            job.id,
            "sent",
            {
                "recipient": job.recipient_email,
                "subject": job.subject,
                "message_id": provider_id,
            },
            now=sent_at,
        )
        if self.metrics is not None:
            self.metrics.inc_sent(job.school_id)
        if self._log_delivery_activity:
            self.logger.info("Delivery succeeded for email %s (school=%s)", job.id, job.school_id)
        return DispatchOutcome(
            id=job.id,
            recipient=job.recipient_email,
            subject=job.subject,
            status=EmailStatus.SENT,
        )

    def _log_lost(self, job: EmailJob, outcome: str) -> None:
        self.logger.warning(
            "Email %s is no longer processing, %s outcome not recorded (school=%s)", job.id, outcome, job.school_id
        )

    async def _record_rate_limited(self, job: EmailJob, exc: TransportRateLimitError) -> DispatchOutcome | None:
        now = self._clock()
        error = str(exc) or "rate limited"
        next_retry_at = now + self.policy.rate_limited_delay
        if not await self.store.mark_rate_limited(job.id, error=error, next_retry_at=next_retry_at, now=now):
            self._log_lost(job, "rate_limited")
            return None
        await self.store.log_event(
            job.id,
            "rate_limited",
            {"error": error, "next_retry_at": next_retry_at},
            now=now,
        )
        if self.metrics is not None:
            self.metrics.inc_rate_limited(job.school_id)
        self.logger.warning("Email %s throttled by provider, retry after %.0fs", job.id, self.policy.rate_limited_delay)
        return DispatchOutcome(
            id=job.id,
            recipient=job.recipient_email,
            subject=job.subject,
            status=EmailStatus.RATE_LIMITED,
            error=error,
        )

    async def _record_failure(self, job: EmailJob, exc: Exception) -> DispatchOutcome | None:
        now = self._clock()
        error = str(exc) or exc.__class__.__name__
        if not await self.store.mark_failed(job.id, error=error, now=now):
            self._log_lost(job, "failed")
            return None
        await self.store.log_event(
            job.id,
            "failed",
            {"error": error, "recipient": job.recipient_email, "subject": job.subject},
            now=now,
        )
        if self.metrics is not None:
            self.metrics.inc_failed(job.school_id)
        self.logger.warning("Delivery failed for email %s (school=%s): %s", job.id, job.school_id, error)
        return DispatchOutcome(
            id=job.id,
            recipient=job.recipient_email,
            subject=job.subject,
            status=EmailStatus.FAILED,
            error=error,
        )
