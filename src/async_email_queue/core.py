# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration of the email queue.

This module provides the EmailQueueCore class, which wires the pipeline
components around one store, one transport and one send limiter:

- :class:`~async_email_queue.dispatcher.BatchDispatcher` sends due jobs
- :class:`~async_email_queue.reclaim.StuckJobReclaimer` recovers stuck and
  rate-limited jobs
- :class:`~async_email_queue.health.HealthMonitor` appends health snapshots

The same dispatcher serves the operator RPC (:meth:`process_batch`), the
on-demand trigger (:meth:`run_trigger`) and the optional background
scheduler, so every path shares one global send cadence. Passes may overlap;
the conditional claim in the store keeps them from sending a job twice.

Example:
    Running the queue with its background scheduler::

        from async_email_queue.core import EmailQueueCore
        from async_email_queue.transport import HttpApiTransport

        core = EmailQueueCore(
            db_path="/data/email_queue.db",
            transport=HttpApiTransport(api_key="re_...", from_address="noreply@school.org"),
            start_active=True,
        )
        await core.start()
        ...
        await core.stop()
"""

from __future__ import annotations

import asyncio
import math
import time
import uuid
from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from .config_loader import QueueSettings
from .dispatcher import DEFAULT_BATCH_SIZE, BatchDispatcher
from .health import HealthMonitor, HealthThresholds, summarize_health
from .logger import get_logger
from .models import (
    BatchResult,
    EmailJob,
    EmailJobCreate,
    EmailQueueError,
    EmailStatus,
    HealthSnapshot,
    InvalidTransitionError,
    JobNotFoundError,
    RetryBudgetExhaustedError,
    RetryResult,
)
from .persistence import QueueStore
from .prometheus import QueueMetrics
from .rate_limit import DEFAULT_MIN_SEND_INTERVAL, SendRateLimiter
from .reclaim import StuckJobReclaimer
from .retry import RetryPolicy
from .transport import EmailTransport, create_transport

TRIGGER_BATCH_SIZE = 10
MAX_ENQUEUE_BATCH = 1000


class EmailQueueCore:
    """Central coordinator of the email queue.

    Attributes:
        store: Queue storage.
        transport: Outbound transport shared by every dispatch path.
        policy: Retry policy shared by the dispatcher and the reclaimer.
        limiter: The single global send permit.
        metrics: Prometheus collector.
        dispatcher: Batch dispatcher.
        reclaimer: Stuck and rate-limited job reclaimer.
        monitor: Health monitor.
    """

    def __init__(
        self,
        *,
        db_path: str | None = "/data/email_queue.db",
        store: QueueStore | None = None,
        transport: EmailTransport | None = None,
        policy: RetryPolicy | None = None,
        thresholds: HealthThresholds | None = None,
        metrics: QueueMetrics | None = None,
        limiter: SendRateLimiter | None = None,
        clock: Callable[[], float] | None = None,
        logger=None,
        start_active: bool = False,
        batch_size: int = DEFAULT_BATCH_SIZE,
        trigger_batch_size: int = TRIGGER_BATCH_SIZE,
        min_send_interval: float = DEFAULT_MIN_SEND_INTERVAL,
        dispatch_interval: float = 60.0,
        health_check_interval: float = 300.0,
        from_address: str | None = None,
        test_mode: bool = False,
        log_delivery_activity: bool = False,
    ):
        """Initialize the core.

        Args:
            db_path: Connection string for the store; ignored when ``store``
                is given.
            store: Pre-built store.
            transport: Outbound transport. Without one, an HTTP API transport
                with no key is used and every send fails with a configuration
                error recorded on the job.
            policy: Retry policy. Defaults to 3 retries, a 2/4/8 minute backoff and a
                10 minute stuck threshold.
            thresholds: Health thresholds. Their stuck threshold defaults to
                the policy's.
            metrics: Prometheus collector.
            limiter: Global send limiter.
            clock: Epoch-seconds clock shared by every component.
            logger: Logger instance.
            start_active: Whether the background scheduler dispatches.
            batch_size: Default batch size of :meth:`process_batch`.
            trigger_batch_size: Fixed cap used by :meth:`run_trigger`.
            min_send_interval: Global spacing between sends, in seconds.
            dispatch_interval: Seconds between scheduled trigger passes.
            health_check_interval: Seconds between reclaim/health passes.
            from_address: Sender passed to the transport.
            test_mode: Background loops only run when woken by ``run now``.
            log_delivery_activity: Log every delivery attempt at INFO.
        """
        self._clock = clock or time.time
        self.logger = logger or get_logger()
        self.store = store or QueueStore(db_path or ":memory:")
        self.transport = transport or create_transport("http", from_address=from_address)
        self.policy = policy or RetryPolicy()
        self.metrics = metrics or QueueMetrics()
        self.limiter = limiter or SendRateLimiter(min_interval=min_send_interval, clock=self._clock)
        if thresholds is None:
            thresholds = HealthThresholds(stuck_threshold_minutes=self.policy.stuck_threshold_minutes)

        self.dispatcher = BatchDispatcher(
            self.store,
            self.transport,
            limiter=self.limiter,
            policy=self.policy,
            metrics=self.metrics,
            clock=self._clock,
            logger=self.logger,
            from_address=from_address,
            log_delivery_activity=log_delivery_activity,
        )
        self.reclaimer = StuckJobReclaimer(
            self.store,
            policy=self.policy,
            metrics=self.metrics,
            clock=self._clock,
            logger=self.logger,
        )
        self.monitor = HealthMonitor(
            self.store,
            thresholds=thresholds,
            metrics=self.metrics,
            clock=self._clock,
            logger=self.logger,
        )

        self._batch_size = max(1, int(batch_size))
        self._trigger_batch_size = max(1, int(trigger_batch_size))
        self._test_mode = bool(test_mode)
        self._active = bool(start_active)
        self._dispatch_interval = math.inf if self._test_mode else max(0.05, float(dispatch_interval))
        self._health_interval = math.inf if self._test_mode else max(1.0, float(health_check_interval))

        self._stop = asyncio.Event()
        self._wake_dispatch = asyncio.Event()
        self._wake_maintenance = asyncio.Event()
        self._task_dispatch: asyncio.Task | None = None
        self._task_maintenance: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings: QueueSettings, **overrides: Any) -> EmailQueueCore:
        """Create a core from loaded settings; ``overrides`` win over them."""
        options: dict[str, Any] = {
            "db_path": settings.db_path,
            "policy": settings.retry_policy(),
            "thresholds": settings.health_thresholds(),
            "start_active": settings.scheduler_active,
            "batch_size": settings.batch_size,
            "min_send_interval": settings.min_send_interval,
            "dispatch_interval": settings.dispatch_interval,
            "health_check_interval": settings.health_check_interval,
            "from_address": settings.from_address,
            "test_mode": settings.test_mode,
            "log_delivery_activity": settings.log_delivery_activity,
        }
        options.update(overrides)
        if options.get("transport") is None:
            options["transport"] = create_transport(settings.transport_kind, **settings.transport_options())
        return cls(**options)

    @property
    def active(self) -> bool:
        return self._active

    async def init(self) -> None:
        """Create the schema and prime the pending gauge."""
        await self.store.init_db()
        await self._refresh_queue_gauge()

    # ------------------------------------------------------------- operations
    async def enqueue(self, entries: list[EmailJobCreate]) -> list[str]:
        """Store new ``pending`` jobs and return their ids."""
        if not entries:
            return []
        ids = await self.store.insert_jobs(
            entries, now=self._clock(), default_max_retries=self.policy.max_retries
        )
        await self._refresh_queue_gauge()
        return ids

    async def process_batch(self, batch_size: int | None = None) -> BatchResult:
        """Run one dispatch pass over at most ``batch_size`` due jobs."""
        result = await self.dispatcher.process_batch(batch_size or self._batch_size)
        await self._refresh_queue_gauge()
        return result

    async def retry_stuck_emails(self, max_age_minutes: float | None = None) -> list[RetryResult]:
        results = await self.reclaimer.retry_stuck_emails(max_age_minutes)
        if results:
            await self._refresh_queue_gauge()
        return results

    async def release_rate_limited(self) -> list[RetryResult]:
        return await self.reclaimer.release_rate_limited()

    async def check_queue_health(self) -> list[HealthSnapshot]:
        return await self.monitor.check_queue_health()

    async def run_trigger(self) -> dict[str, Any]:
        """Flush the queue once: release throttled jobs, dispatch, log the pass.

        Returns:
            ``{message, processed, failed, details, request_id}``.
        """
        request_id = str(uuid.uuid4())
        await self.reclaimer.release_rate_limited()
        result = await self.dispatcher.process_batch(self._trigger_batch_size)
        await self.store.insert_processing_log(
            request_id=request_id,
            processed_count=result.processed_count,
            failed_count=result.failed_count,
            status="completed",
            processed_at=self._clock(),
        )
        await self._refresh_queue_gauge()
        return {
            "message": f"Processed {result.processed_count} email(s), {result.failed_count} failed",
            "processed": result.processed_count,
            "failed": result.failed_count,
            "details": [detail.model_dump(mode="json") for detail in result.details],
            "request_id": request_id,
        }

    async def get_job(self, job_id: str) -> EmailJob:
        job = await self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def cancel_job(self, job_id: str) -> EmailJob:
        """Operator cancel; only ``pending`` jobs can be cancelled."""
        job = await self.get_job(job_id)
        now = self._clock()
        if not await self.store.cancel(job_id, now=now):
            current = await self.get_job(job_id)
            raise InvalidTransitionError(current.status, EmailStatus.CANCELLED)
        await self.store.log_event(job_id, "cancelled", {"previous_status": job.status.value}, now=now)
        await self._refresh_queue_gauge()
        return await self.get_job(job_id)

    async def retry_job(self, job_id: str) -> EmailJob:
        """Operator retry of a ``failed`` job, consuming one retry."""
        job = await self.get_job(job_id)
        if job.status is not EmailStatus.FAILED:
            raise InvalidTransitionError(job.status, EmailStatus.PENDING)
        if self.policy.is_exhausted(job.retry_count, job.max_retries):
            raise RetryBudgetExhaustedError(job_id)
        now = self._clock()
        if not await self.store.requeue(job, now=now, scheduled_at=now):
            current = await self.get_job(job_id)
            raise InvalidTransitionError(current.status, EmailStatus.PENDING)
        await self.store.log_event(
            job_id, "retried", {"previous_error": job.error_message, "retry_count": job.retry_count + 1}, now=now
        )
        await self._refresh_queue_gauge()
        return await self.get_job(job_id)

    async def delete_job(self, job_id: str) -> None:
        if not await self.store.delete_job(job_id):
            raise JobNotFoundError(job_id)
        await self._refresh_queue_gauge()

    # ------------------------------------------------------------------ commands
    async def handle_command(self, cmd: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute an external control command.

        Supported commands:
        - ``run now``, ``suspend``, ``activate``: scheduler control
        - ``enqueue``, ``listJobs``, ``getJob``, ``jobEvents``: queue access
        - ``cancelJob``, ``retryJob``, ``deleteJob``: operator actions
        - ``processBatch``, ``retryStuck``, ``checkHealth``, ``trigger``:
          pipeline passes
        - ``healthHistory``, ``processingLog``: history

        Args:
            cmd: Command name.
            payload: Command-specific parameters.

        Returns:
            dict: Result with an ``ok`` flag; failures carry ``error`` and
            ``code``.
        """
        payload = payload or {}
        try:
            match cmd:
                case "run now":
                    self._wake_dispatch.set()
                    self._wake_maintenance.set()
                    return {"ok": True}
                case "suspend":
                    self._active = False
                    return {"ok": True, "active": False}
                case "activate":
                    self._active = True
                    return {"ok": True, "active": True}
                case "enqueue":
                    return await self._handle_enqueue(payload)
                case "listJobs":
                    jobs = await self.store.list_jobs(
                        school_id=payload.get("school_id"),
                        status=payload.get("status"),
                        limit=payload.get("limit"),
                    )
                    return {"ok": True, "jobs": [job.to_public() for job in jobs]}
                case "getJob":
                    job = await self.get_job(payload.get("id"))
                    return {"ok": True, "job": job.to_public()}
                case "jobEvents":
                    await self.get_job(payload.get("id"))
                    events = await self.store.list_events(payload.get("id"))
                    return {"ok": True, "events": events}
                case "cancelJob":
                    job = await self.cancel_job(payload.get("id"))
                    return {"ok": True, "job": job.to_public()}
                case "retryJob":
                    job = await self.retry_job(payload.get("id"))
                    return {"ok": True, "job": job.to_public()}
                case "deleteJob":
                    await self.delete_job(payload.get("id"))
                    return {"ok": True}
                case "processBatch":
                    result = await self.process_batch(payload.get("batch_size"))
                    return {"ok": True, **result.model_dump(mode="json")}
                case "retryStuck":
                    results = await self.retry_stuck_emails(payload.get("max_age_minutes"))
                    return {"ok": True, "results": [r.model_dump(mode="json") for r in results]}
                case "checkHealth":
                    snapshots = await self.check_queue_health()
                    return {
                        "ok": True,
                        "snapshots": [s.model_dump(mode="json") for s in snapshots],
                        "summary": summarize_health(snapshots),
                    }
                case "healthHistory":
                    history = await self.store.list_health_history(
                        school_id=payload.get("school_id"), limit=int(payload.get("limit") or 100)
                    )
                    return {"ok": True, "history": [s.to_public() for s in history]}
                case "trigger":
                    return {"ok": True, **(await self.run_trigger())}
                case "processingLog":
                    logs = await self.store.list_processing_logs(limit=int(payload.get("limit") or 50))
                    return {"ok": True, "logs": logs}
                case _:
                    return {"ok": False, "error": "unknown command"}
        except EmailQueueError as exc:
            return {"ok": False, "error": str(exc), "code": exc.code}
        except ValueError as exc:
            return {"ok": False, "error": str(exc), "code": "invalid_request"}

    async def _handle_enqueue(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Validate and store the ``jobs`` list of an ``enqueue`` command.

        Invalid entries are rejected individually; ``ok`` is False only when
        nothing could be queued.
        """
        items = payload.get("jobs")
        if not isinstance(items, list):
            return {"ok": False, "error": "jobs must be a list", "code": "invalid_request"}
        if len(items) > MAX_ENQUEUE_BATCH:
            return {
                "ok": False,
                "error": f"Cannot enqueue more than {MAX_ENQUEUE_BATCH} jobs at once",
                "code": "invalid_request",
            }
        validated: list[EmailJobCreate] = []
        rejected: list[dict[str, Any]] = []
        for index, item in enumerate(items):
            try:
                validated.append(item if isinstance(item, EmailJobCreate) else EmailJobCreate.model_validate(item))
            except ValidationError as exc:
                reason = "; ".join(
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
                )
                rejected.append({"index": index, "id": item.get("id") if isinstance(item, dict) else None, "reason": reason})
        ids = await self.enqueue(validated)
        result: dict[str, Any] = {"ok": bool(ids) or not rejected, "queued": len(ids), "ids": ids, "rejected": rejected}
        if not result["ok"]:
            result["error"] = rejected[0]["reason"]
            result["code"] = "invalid_request"
        return result

    # ----------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Initialize storage and start the dispatch and maintenance loops."""
        self.logger.debug("Starting EmailQueueCore...")
        await self.init()
        self._stop.clear()
        self._task_dispatch = asyncio.create_task(self._dispatch_loop(), name="email-dispatch-loop")
        self._task_maintenance = asyncio.create_task(self._maintenance_loop(), name="email-maintenance-loop")

    async def stop(self) -> None:
        """Stop the background loops and release the transport."""
        self._stop.set()
        self._wake_dispatch.set()
        self._wake_maintenance.set()
        await asyncio.gather(
            *(task for task in [self._task_dispatch, self._task_maintenance] if task),
            return_exceptions=True,
        )
        self._task_dispatch = None
        self._task_maintenance = None
        await self.transport.close()
        await self.store.close()

    async def _dispatch_loop(self) -> None:
        """Run trigger passes every ``dispatch_interval`` while active."""
        first_iteration = True
        while not self._stop.is_set():
            if first_iteration and self._test_mode:
                await self._wait_for_wakeup(self._wake_dispatch, self._dispatch_interval)
            first_iteration = False
            if self._stop.is_set():
                break
            busy = False
            if self._active:
                try:
                    summary = await self.run_trigger()
                    busy = summary["processed"] + summary["failed"] >= self._trigger_batch_size
                except Exception as exc:  # pragma: no cover - loop must survive store outages
                    self.logger.exception("Unhandled error in dispatch loop: %s", exc)
            if not busy:
                await self._wait_for_wakeup(self._wake_dispatch, self._dispatch_interval)

    async def _maintenance_loop(self) -> None:
        """Reclaim stuck jobs and record health every ``health_check_interval``."""
        while not self._stop.is_set():
            if self._test_mode:
                await self._wait_for_wakeup(self._wake_maintenance, self._health_interval)
                if self._stop.is_set():
                    break
            if self._active:
                try:
                    await self.retry_stuck_emails()
                    await self.check_queue_health()
                except Exception as exc:  # pragma: no cover - loop must survive store outages
                    self.logger.exception("Unhandled error in maintenance loop: %s", exc)
            if not self._test_mode:
                await self._wait_for_wakeup(self._wake_maintenance, self._health_interval)

    async def _wait_for_wakeup(self, event: asyncio.Event, timeout: float | None) -> None:
        """Sleep until ``timeout`` elapses or ``event`` is set.

        ``None`` or infinity waits for the event only.
        """
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(float(timeout)):
            await event.wait()
            event.clear()
            return
        timeout = max(0.0, float(timeout))
        if timeout == 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return
        event.clear()

    async def _refresh_queue_gauge(self) -> None:
        try:
            counts = await self.store.count_by_status()
        except Exception:  # pragma: no cover - gauge refresh is best effort
            self.logger.exception("Failed to refresh queue gauge")
            return
        self.metrics.set_pending(counts.get(EmailStatus.PENDING.value, 0))
