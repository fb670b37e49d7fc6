# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Domain models for the email queue.

This module defines the job state machine, the pydantic models exchanged
between the store, the pipeline components and the HTTP layer, and the
exception hierarchy shared by all of them.

Models:
    - EmailStatus: Job lifecycle states with an explicit transition table
    - HealthStatus: Per-school health classification
    - EmailJobCreate: Payload accepted when enqueuing a job
    - EmailJob: A stored queue row
    - HealthSnapshot: One row of the health time series
    - RetryResult: Outcome of reclaiming one stuck job
    - DispatchOutcome / BatchResult: Outcome of a dispatch pass

All timestamps are epoch seconds (float, UTC).
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_MAX_RETRIES = 3
MAX_RETRIES_EXCEEDED = "max retries exceeded"


# --------------------------------------------------------------------- errors
class EmailQueueError(RuntimeError):
    """Base class for errors raised by the email queue."""

    code = "email_queue_error"

    def __init__(self, message: str = "Email queue error"):
        super().__init__(message)


class InvalidTransitionError(EmailQueueError):
    """Raised when a job is asked to move along an edge the state machine forbids."""

    code = "invalid_transition"

    def __init__(self, current: EmailStatus | str, target: EmailStatus | str):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(f"Cannot move job from {current_value} to {target_value}")
        self.current = current_value
        self.target = target_value


class JobNotFoundError(EmailQueueError):
    """Raised when an operator action targets a job id that does not exist."""

    code = "job_not_found"

    def __init__(self, job_id: str):
        super().__init__(f"Email job '{job_id}' not found")
        self.job_id = job_id


class RetryBudgetExhaustedError(EmailQueueError):
    """Raised when a manual retry would push ``retry_count`` past ``max_retries``."""

    code = "retry_budget_exhausted"

    def __init__(self, job_id: str):
        super().__init__(f"Email job '{job_id}': {MAX_RETRIES_EXCEEDED}")
        self.job_id = job_id


# --------------------------------------------------------------- state machine
class EmailStatus(str, Enum):
    """Lifecycle states of a queued email.

    Attributes:
        PENDING: Waiting for dispatch once ``scheduled_at`` has passed.
        PROCESSING: Claimed by a dispatcher, send in progress.
        SENT: Delivered to the transport. Terminal.
        FAILED: Last attempt failed; re-enters only through an explicit retry.
        CANCELLED: Withdrawn by an operator before dispatch. Terminal.
        RATE_LIMITED: The provider throttled the send; released after a delay.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RATE_LIMITED = "rate_limited"

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]

    def can_transition_to(self, target: EmailStatus | str) -> bool:
        """Return True when ``self -> target`` is a legal edge."""
        return EmailStatus(target) in ALLOWED_TRANSITIONS[self]

    def check_transition(self, target: EmailStatus | str) -> EmailStatus:
        """Validate ``self -> target`` and return the target as an enum member.

        Raises:
            InvalidTransitionError: If the edge is not in the transition table.
        """
        target_status = EmailStatus(target)
        if target_status not in ALLOWED_TRANSITIONS[self]:
            raise InvalidTransitionError(self, target_status)
        return target_status


ALLOWED_TRANSITIONS: dict[EmailStatus, frozenset[EmailStatus]] = {
    EmailStatus.PENDING: frozenset({EmailStatus.PROCESSING, EmailStatus.CANCELLED}),
    EmailStatus.PROCESSING: frozenset(
        {EmailStatus.SENT, EmailStatus.FAILED, EmailStatus.RATE_LIMITED, EmailStatus.PENDING}
    ),
    EmailStatus.RATE_LIMITED: frozenset({EmailStatus.PENDING, EmailStatus.FAILED}),
    EmailStatus.FAILED: frozenset({EmailStatus.PENDING}),
    EmailStatus.SENT: frozenset(),
    EmailStatus.CANCELLED: frozenset(),
}


class HealthStatus(str, Enum):
    """Health classification of one school's queue."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


# ------------------------------------------------------------------ helpers
def parse_recipients(value: Any) -> list[str]:
    """Normalise a recipient field into a list of addresses.

    Strings are split on commas; every item is stripped and empty items are
    dropped. Lists and tuples are flattened the same way so that
    ``["a@x.org, b@x.org"]`` and ``"a@x.org,b@x.org"`` agree.

    Args:
        value: A comma-joined string, an iterable of strings, or None.

    Returns:
        The addresses in their original order.
    """
    if value is None:
        return []
    if isinstance(value, str):
        parts = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        parts = []
        for item in value:
            if item is None:
                continue
            parts.extend(str(item).split(","))
    else:
        parts = str(value).split(",")
    return [part.strip() for part in parts if part.strip()]


def join_recipients(recipients: list[str]) -> str:
    """Encode a recipient list the way ``recipient_email`` stores it."""
    return ", ".join(recipients)


def to_epoch(value: Any) -> float | None:
    """Convert a datetime, ISO-8601 string or number to epoch seconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return to_epoch(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise ValueError(f"Unsupported timestamp value: {value!r}")


def format_epoch(value: float | None) -> str | None:
    """Render epoch seconds as an ISO-8601 UTC string with a ``Z`` suffix."""
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), timezone.utc).isoformat().replace("+00:00", "Z")


# ------------------------------------------------------------------- payloads
class EmailJobCreate(BaseModel):
    """Payload accepted when a producer enqueues an email.

    ``recipient_email`` may be a comma-joined string or a list; both are
    normalised to a list and stored comma-joined.

    Attributes:
        recipient_email: One or more recipient addresses.
        subject: Message subject.
        body: HTML body.
        school_id: Owning school (tenant).
        template_id: Template the body was rendered from, if any.
        rule_id: Business rule that produced the job, if any.
        source_table: Table of the record the email is about, if any.
        record_id: Id of that record, if any.
        scheduled_at: Earliest dispatch time. Defaults to enqueue time.
        max_retries: Retry budget. Defaults to the queue's policy.
    """

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: Annotated[str | None, Field(default=None, description="Optional client-supplied job id")]
    recipient_email: Annotated[
        list[str],
        Field(alias="recipients", description="Recipient addresses (list or comma-joined string)"),
    ]
    subject: Annotated[str, Field(min_length=1, description="Message subject")]
    body: Annotated[str, Field(description="HTML body")]
    school_id: Annotated[str, Field(min_length=1, description="Owning school")]
    template_id: Annotated[str | None, Field(default=None)]
    rule_id: Annotated[str | None, Field(default=None)]
    source_table: Annotated[str | None, Field(default=None)]
    record_id: Annotated[str | None, Field(default=None)]
    scheduled_at: Annotated[float | None, Field(default=None, description="Epoch seconds")]
    max_retries: Annotated[int | None, Field(default=None, ge=0)]

    @field_validator("recipient_email", mode="before")
    @classmethod
    def split_recipients(cls, v: Any) -> list[str]:
        """Accept comma-joined strings as well as lists and require one address."""
        recipients = parse_recipients(v)
        if not recipients:
            raise ValueError("at least one recipient is required")
        return recipients

    @field_validator("scheduled_at", mode="before")
    @classmethod
    def coerce_scheduled_at(cls, v: Any) -> float | None:
        return to_epoch(v)


# --------------------------------------------------------------------- rows
class EmailJob(BaseModel):
    """A row of the ``email_queue`` table."""

    id: str
    recipient_email: str
    subject: str
    body: str
    school_id: str
    status: EmailStatus
    scheduled_at: float
    template_id: str | None = None
    rule_id: str | None = None
    source_table: str | None = None
    record_id: str | None = None
    sent_at: float | None = None
    last_attempt_at: float | None = None
    next_retry_at: float | None = None
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    error_message: str | None = None
    provider_message_id: str | None = None
    created_at: float | None = None
    updated_at: float | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> EmailJob:
        return cls.model_validate(row)

    @property
    def recipients(self) -> list[str]:
        return parse_recipients(self.recipient_email)

    def is_eligible(self, now: float) -> bool:
        """True when the job may be picked up by a dispatch pass at ``now``."""
        return self.status is EmailStatus.PENDING and self.scheduled_at <= now

    def is_stuck(self, now: float, threshold_seconds: float) -> bool:
        """True when the job has sat in ``processing`` longer than the threshold."""
        return (
            self.status is EmailStatus.PROCESSING
            and self.last_attempt_at is not None
            and self.last_attempt_at < now - threshold_seconds
        )

    def to_public(self) -> dict[str, Any]:
        """Serialise with ISO-8601 timestamps for API and CLI output."""
        data = self.model_dump(mode="json")
        for key in ("scheduled_at", "sent_at", "last_attempt_at", "next_retry_at", "created_at", "updated_at"):
            data[key] = format_epoch(getattr(self, key))
        return data


class HealthSnapshot(BaseModel):
    """A row of the ``email_queue_health`` time series."""

    school_id: str
    check_timestamp: float
    pending_count: int = 0
    stuck_count: int = 0
    failed_count: int = 0
    processing_time_avg_ms: float | None = None
    health_status: HealthStatus
    id: str | None = None

    def to_public(self) -> dict[str, Any]:
        data = self.model_dump(mode="json")
        data["check_timestamp"] = format_epoch(self.check_timestamp)
        return data


class RetryResult(BaseModel):
    """Outcome of reclaiming one stuck or released job."""

    email_id: str
    school_id: str
    retry_count: int
    status: EmailStatus


class DispatchOutcome(BaseModel):
    """Per-job outcome reported by a dispatch pass."""

    id: str
    recipient: str
    subject: str
    status: EmailStatus
    error: str | None = None


class BatchResult(BaseModel):
    """Aggregate outcome of one dispatch pass."""

    processed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    details: list[DispatchOutcome] = Field(default_factory=list)
