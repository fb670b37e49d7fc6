from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from async_email_queue.models import (
    ALLOWED_TRANSITIONS,
    EmailJob,
    EmailJobCreate,
    EmailStatus,
    InvalidTransitionError,
    JobNotFoundError,
    RetryBudgetExhaustedError,
    format_epoch,
    join_recipients,
    parse_recipients,
    to_epoch,
)


def test_terminal_states_have_no_exits():
    assert EmailStatus.SENT.is_terminal
    assert EmailStatus.CANCELLED.is_terminal
    for status in (EmailStatus.PENDING, EmailStatus.PROCESSING, EmailStatus.FAILED, EmailStatus.RATE_LIMITED):
        assert not status.is_terminal


def test_transition_table_covers_every_status():
    assert set(ALLOWED_TRANSITIONS) == set(EmailStatus)


@pytest.mark.parametrize(
    "current,target",
    [
        ("pending", "processing"),
        ("pending", "cancelled"),
        ("processing", "sent"),
        ("processing", "failed"),
        ("processing", "rate_limited"),
        ("processing", "pending"),
        ("rate_limited", "pending"),
        ("failed", "pending"),
    ],
)
def test_allowed_transitions(current, target):
    assert EmailStatus(current).can_transition_to(target)
    assert EmailStatus(current).check_transition(target) is EmailStatus(target)


@pytest.mark.parametrize(
    "current,target",
    [
        ("sent", "pending"),
        ("cancelled", "pending"),
        ("pending", "sent"),
        ("failed", "processing"),
        ("processing", "cancelled"),
    ],
)
def test_forbidden_transitions(current, target):
    assert not EmailStatus(current).can_transition_to(target)
    with pytest.raises(InvalidTransitionError) as exc:
        EmailStatus(current).check_transition(target)
    assert exc.value.current == current
    assert exc.value.target == target
    assert exc.value.code == "invalid_transition"


def test_error_codes():
    assert JobNotFoundError("x").code == "job_not_found"
    err = RetryBudgetExhaustedError("x")
    assert err.code == "retry_budget_exhausted"
    assert "max retries exceeded" in str(err)


def test_parse_recipients_accepts_strings_and_lists():
    assert parse_recipients("a@x.org, b@x.org ,,") == ["a@x.org", "b@x.org"]
    assert parse_recipients(["a@x.org, b@x.org", "c@x.org"]) == ["a@x.org", "b@x.org", "c@x.org"]
    assert parse_recipients(None) == []
    assert join_recipients(["a@x.org", "b@x.org"]) == "a@x.org, b@x.org"


def test_job_create_normalises_recipients_and_alias():
    job = EmailJobCreate.model_validate(
        {"recipients": "a@x.org,b@x.org", "subject": "S", "body": "B", "school_id": "s1"}
    )
    assert job.recipient_email == ["a@x.org", "b@x.org"]

    same = EmailJobCreate.model_validate(
        {"recipient_email": ["a@x.org"], "subject": "S", "body": "B", "school_id": "s1"}
    )
    assert same.recipient_email == ["a@x.org"]


def test_job_create_rejects_invalid_payloads():
    with pytest.raises(ValidationError):
        EmailJobCreate.model_validate({"recipient_email": " , ", "subject": "S", "body": "B", "school_id": "s1"})
    with pytest.raises(ValidationError):
        EmailJobCreate.model_validate({"recipient_email": "a@x.org", "subject": "", "body": "B", "school_id": "s1"})
    with pytest.raises(ValidationError):
        EmailJobCreate.model_validate(
            {"recipient_email": "a@x.org", "subject": "S", "body": "B", "school_id": "s1", "unknown": 1}
        )
    with pytest.raises(ValidationError):
        EmailJobCreate.model_validate(
            {"recipient_email": "a@x.org", "subject": "S", "body": "B", "school_id": "s1", "max_retries": -1}
        )


def test_scheduled_at_accepts_iso_strings():
    job = EmailJobCreate.model_validate(
        {
            "recipient_email": "a@x.org",
            "subject": "S",
            "body": "B",
            "school_id": "s1",
            "scheduled_at": "2024-01-01T00:00:00Z",
        }
    )
    assert job.scheduled_at == datetime(2024, 1, 1, tzinfo=timezone.utc).timestamp()


def test_epoch_helpers():
    assert to_epoch(None) is None
    assert to_epoch(12) == 12.0
    assert to_epoch("12.5") == 12.5
    assert to_epoch(datetime(1970, 1, 1, 0, 1)) == 60.0
    assert format_epoch(0) == "1970-01-01T00:00:00Z"
    assert format_epoch(None) is None


def test_email_job_eligibility_and_stuck():
    job = EmailJob(
        id="j1",
        recipient_email="a@x.org, b@x.org",
        subject="S",
        body="B",
        school_id="s1",
        status=EmailStatus.PENDING,
        scheduled_at=100.0,
    )
    assert job.recipients == ["a@x.org", "b@x.org"]
    assert job.is_eligible(100.0)
    assert not job.is_eligible(99.0)
    assert not job.is_stuck(10_000.0, 600)

    processing = job.model_copy(update={"status": EmailStatus.PROCESSING, "last_attempt_at": 100.0})
    assert not processing.is_eligible(200.0)
    assert processing.is_stuck(701.0, 600)
    assert not processing.is_stuck(700.0, 600)

    public = processing.to_public()
    assert public["status"] == "processing"
    assert public["last_attempt_at"] == "1970-01-01T00:01:40Z"
