# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the email queue.

This module exposes the queue to the dashboard and to schedulers:

- ``POST /functions/process-email-queue``: on-demand trigger (flush once)
- ``POST /rpc/*``: operator RPCs (health check, stuck reclaim, batch)
- ``/email-queue``: enqueue, inspect, cancel, retry and delete jobs
- ``/email-queue-health``: health history, newest first
- ``/commands/*``: scheduler control
- ``/health`` and ``/metrics``: liveness and Prometheus scraping

Every endpoint except ``/health`` requires the ``X-API-Token`` header when a
token is configured.

Example:
    Creating and running the API application::

        from async_email_queue.core import EmailQueueCore
        from async_email_queue.api import create_app

        core = EmailQueueCore(db_path="/data/email_queue.db")
        app = create_app(core, api_token="secret-token")
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from typing import Any, AsyncContextManager, Callable, Dict, List, Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import EmailQueueCore
from .models import EmailJobCreate

logger = logging.getLogger(__name__)

app = FastAPI(title="Email Queue Service")
service: EmailQueueCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

ERROR_STATUS = {
    "job_not_found": status.HTTP_404_NOT_FOUND,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "retry_budget_exhausted": status.HTTP_409_CONFLICT,
}


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class StatusResponse(CommandStatus):
    active: bool


class EnqueuePayload(BaseModel):
    """Jobs submitted by a producer."""
    jobs: List[EmailJobCreate] = Field(min_length=1)


class RejectedJob(BaseModel):
    index: int
    id: Optional[str] = None
    reason: str


class EnqueueResponse(CommandStatus):
    queued: int = 0
    ids: List[str] = Field(default_factory=list)
    rejected: List[RejectedJob] = Field(default_factory=list)


class EmailJobRecord(BaseModel):
    """A queue row as returned to operators (timestamps in ISO-8601)."""
    id: str
    recipient_email: str
    subject: str
    body: str
    school_id: str
    status: str
    template_id: Optional[str] = None
    rule_id: Optional[str] = None
    source_table: Optional[str] = None
    record_id: Optional[str] = None
    scheduled_at: Optional[str] = None
    sent_at: Optional[str] = None
    last_attempt_at: Optional[str] = None
    next_retry_at: Optional[str] = None
    retry_count: int
    max_retries: int
    error_message: Optional[str] = None
    provider_message_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class JobResponse(CommandStatus):
    job: EmailJobRecord


class JobsResponse(CommandStatus):
    jobs: List[EmailJobRecord]


class JobEvent(BaseModel):
    id: str
    queue_id: str
    event_type: str
    event_data: Dict[str, Any]
    created_at: float


class JobEventsResponse(CommandStatus):
    events: List[JobEvent]


class DispatchDetail(BaseModel):
    id: str
    recipient: str
    subject: str
    status: str
    error: Optional[str] = None


class TriggerResponse(BaseModel):
    """Summary returned by the on-demand trigger."""
    message: str
    processed: int
    failed: int
    details: List[DispatchDetail]
    request_id: str


class BatchRow(BaseModel):
    processed_count: int
    failed_count: int
    details: List[DispatchDetail]


class ProcessBatchPayload(BaseModel):
    batch_size: int = Field(default=10, ge=1, le=500)


class RetryStuckPayload(BaseModel):
    max_age_minutes: Optional[float] = Field(default=None, ge=0)


class RetryRow(BaseModel):
    email_id: str
    school_id: str
    retry_count: int
    status: str


class HealthRow(BaseModel):
    school_id: str
    health_status: str
    pending_count: int
    stuck_count: int
    failed_count: int
    processing_time_avg_ms: Optional[float] = None


class HealthHistoryRow(HealthRow):
    id: Optional[str] = None
    check_timestamp: str


class ProcessingLogRow(BaseModel):
    id: str
    request_id: str
    processed_count: int
    failed_count: int
    status: str
    processed_at: float


def _raise_for_result(result: Dict[str, Any]) -> None:
    """Turn an ``ok: False`` command result into an HTTP error."""
    if isinstance(result, dict) and result.get("ok") is True:
        return
    code = result.get("code") if isinstance(result, dict) else None
    error = result.get("error") if isinstance(result, dict) else "command failed"
    raise HTTPException(status_code=ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST), detail=error)


def _require_service() -> EmailQueueCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def create_app(
    svc: EmailQueueCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`async_email_queue.core.EmailQueueCore` serving requests.
    api_token:
        Optional secret required in the ``X-API-Token`` header.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Email Queue Service", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    commands = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])
    rpc = APIRouter(prefix="/rpc", tags=["rpc"], dependencies=[auth_dependency])
    queue = APIRouter(prefix="/email-queue", tags=["queue"], dependencies=[auth_dependency])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        logger.error(f"Validation error on {request.method} {request.url.path}: {exc.errors()}")
        return JSONResponse(status_code=422, content={"detail": exc.errors()})

    @api.get("/health")
    async def health():
        """Liveness probe (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_endpoint():
        svc = _require_service()
        return StatusResponse(ok=True, active=svc.active)

    # ------------------------------------------------------------- commands
    @commands.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the background loops immediately."""
        result = await _require_service().handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @commands.post("/suspend", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def suspend():
        result = await _require_service().handle_command("suspend", {})
        return BasicOkResponse.model_validate(result)

    @commands.post("/activate", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def activate():
        result = await _require_service().handle_command("activate", {})
        return BasicOkResponse.model_validate(result)

    # -------------------------------------------------------------- trigger
    @api.post("/functions/process-email-queue", response_model=TriggerResponse, dependencies=[auth_dependency])
    async def process_email_queue():
        """Flush the queue once and write a processing-log row.

        Unhandled failures return 500 with zero counts so that schedulers can
        log the outcome without parsing FastAPI's error shape.
        """
        svc = _require_service()
        try:
            result = await svc.run_trigger()
        except Exception as exc:
            logger.exception("process-email-queue failed")
            return JSONResponse(status_code=500, content={"error": str(exc), "processed": 0, "failed": 0})
        return TriggerResponse.model_validate(result)

    # ------------------------------------------------------------------ rpc
    @rpc.post("/check_email_queue_health", response_model=List[HealthRow])
    async def check_email_queue_health():
        """Append one health snapshot per school and return them."""
        result = await _require_service().handle_command("checkHealth", {})
        _raise_for_result(result)
        return [HealthRow.model_validate(row) for row in result["snapshots"]]

    @rpc.post("/retry_stuck_emails", response_model=List[RetryRow])
    async def retry_stuck_emails(payload: RetryStuckPayload = RetryStuckPayload()):
        """Reclaim jobs stuck in processing for longer than ``max_age_minutes``."""
        result = await _require_service().handle_command("retryStuck", payload.model_dump())
        _raise_for_result(result)
        return [RetryRow.model_validate(row) for row in result["results"]]

    @rpc.post("/process_email_batch", response_model=List[BatchRow])
    async def process_email_batch(payload: ProcessBatchPayload = ProcessBatchPayload()):
        """Dispatch up to ``batch_size`` due jobs."""
        result = await _require_service().handle_command("processBatch", payload.model_dump())
        _raise_for_result(result)
        return [BatchRow.model_validate(result)]

    # ---------------------------------------------------------------- queue
    @queue.post("", response_model=EnqueueResponse, response_model_exclude_none=True)
    async def enqueue(payload: EnqueuePayload):
        """Store new pending jobs."""
        jobs = [job.model_dump() for job in payload.jobs]
        result = await _require_service().handle_command("enqueue", {"jobs": jobs})
        _raise_for_result(result)
        return EnqueueResponse.model_validate(result)

    @queue.get("", response_model=JobsResponse, response_model_exclude_none=True)
    async def list_jobs(school_id: Optional[str] = None, status: Optional[str] = None, limit: int = 100):
        result = await _require_service().handle_command(
            "listJobs", {"school_id": school_id, "status": status, "limit": limit}
        )
        _raise_for_result(result)
        return JobsResponse.model_validate(result)

    @queue.get("/{job_id}", response_model=JobResponse, response_model_exclude_none=True)
    async def get_job(job_id: str):
        result = await _require_service().handle_command("getJob", {"id": job_id})
        _raise_for_result(result)
        return JobResponse.model_validate(result)

    @queue.get("/{job_id}/events", response_model=JobEventsResponse, response_model_exclude_none=True)
    async def job_events(job_id: str):
        result = await _require_service().handle_command("jobEvents", {"id": job_id})
        _raise_for_result(result)
        return JobEventsResponse.model_validate(result)

    @queue.post("/{job_id}/cancel", response_model=JobResponse, response_model_exclude_none=True)
    async def cancel_job(job_id: str):
        """Cancel a pending job."""
        result = await _require_service().handle_command("cancelJob", {"id": job_id})
        _raise_for_result(result)
        return JobResponse.model_validate(result)

    @queue.post("/{job_id}/retry", response_model=JobResponse, response_model_exclude_none=True)
    async def retry_job(job_id: str):
        """Put a failed job back to pending."""
        result = await _require_service().handle_command("retryJob", {"id": job_id})
        _raise_for_result(result)
        return JobResponse.model_validate(result)

    @queue.delete("/{job_id}", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def delete_job(job_id: str):
        result = await _require_service().handle_command("deleteJob", {"id": job_id})
        _raise_for_result(result)
        return BasicOkResponse.model_validate(result)

    # -------------------------------------------------------------- history
    @api.get("/email-queue-health", response_model=List[HealthHistoryRow], dependencies=[auth_dependency])
    async def health_history(school_id: Optional[str] = None, limit: int = 100):
        """Recent health snapshots, newest first."""
        result = await _require_service().handle_command("healthHistory", {"school_id": school_id, "limit": limit})
        _raise_for_result(result)
        return [HealthHistoryRow.model_validate(row) for row in result["history"]]

    @api.get("/processing-log", response_model=List[ProcessingLogRow], dependencies=[auth_dependency])
    async def processing_log(limit: int = 50):
        result = await _require_service().handle_command("processingLog", {"limit": limit})
        _raise_for_result(result)
        return [ProcessingLogRow.model_validate(row) for row in result["logs"]]

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics."""
        svc = _require_service()
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(commands)
    api.include_router(rpc)
    api.include_router(queue)
    return api
