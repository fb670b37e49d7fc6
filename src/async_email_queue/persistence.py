# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Durable storage for the email queue.

This module provides the QueueStore class that owns every table of the
pipeline:

- ``email_queue``: one row per queued email (the authoritative queue state)
- ``email_queue_health``: append-only per-school health snapshots
- ``email_processing_log``: one row per trigger pass
- ``email_logs``: per-job event trail (sent, failed, reclaimed, ...)

Every status change is a single-row conditional ``UPDATE`` guarded by the
status the caller last observed, so concurrent dispatch or reclaim passes
never apply the same transition twice: the losing writer sees zero affected
rows. Edges are validated against :data:`ALLOWED_TRANSITIONS` before any SQL
is issued.

Example:
    Basic usage of the store::

        store = QueueStore("/data/email_queue.db")
        await store.init_db()

        ids = await store.insert_jobs([job_create], now=time.time())
        for job in await store.fetch_due(limit=10, now=time.time()):
            if await store.claim(job.id, now=time.time()):
                ...
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Sequence
from typing import Any

from .models import (
    DEFAULT_MAX_RETRIES,
    MAX_RETRIES_EXCEEDED,
    EmailJob,
    EmailJobCreate,
    EmailStatus,
    HealthSnapshot,
    join_recipients,
)
from .sql import DbAdapter, create_adapter

SCHEMA = """
CREATE TABLE IF NOT EXISTS email_queue (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL DEFAULT 0,
    recipient_email TEXT NOT NULL,
    subject TEXT NOT NULL,
    body TEXT NOT NULL,
    template_id TEXT,
    rule_id TEXT,
    source_table TEXT,
    record_id TEXT,
    school_id TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    scheduled_at DOUBLE PRECISION NOT NULL,
    sent_at DOUBLE PRECISION,
    last_attempt_at DOUBLE PRECISION,
    next_retry_at DOUBLE PRECISION,
    retry_count INTEGER NOT NULL DEFAULT 0,
    max_retries INTEGER NOT NULL DEFAULT 3,
    error_message TEXT,
    provider_message_id TEXT,
    created_at DOUBLE PRECISION NOT NULL,
    updated_at DOUBLE PRECISION NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_email_queue_status_scheduled ON email_queue (status, scheduled_at);
CREATE INDEX IF NOT EXISTS idx_email_queue_school ON email_queue (school_id);
CREATE INDEX IF NOT EXISTS idx_email_queue_created_seq ON email_queue (created_at, seq);

CREATE TABLE IF NOT EXISTS email_queue_health (
    id TEXT PRIMARY KEY,
    school_id TEXT NOT NULL,
    check_timestamp DOUBLE PRECISION NOT NULL,
    pending_count INTEGER NOT NULL DEFAULT 0,
    stuck_count INTEGER NOT NULL DEFAULT 0,
    failed_count INTEGER NOT NULL DEFAULT 0,
    processing_time_avg_ms DOUBLE PRECISION,
    health_status TEXT NOT NULL,
    created_at DOUBLE PRECISION NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_email_queue_health_school_ts ON email_queue_health (school_id, check_timestamp);

CREATE TABLE IF NOT EXISTS email_processing_log (
    id TEXT PRIMARY KEY,
    request_id TEXT NOT NULL,
    processed_count INTEGER NOT NULL DEFAULT 0,
    failed_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    processed_at DOUBLE PRECISION NOT NULL
);

CREATE TABLE IF NOT EXISTS email_logs (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL DEFAULT 0,
    queue_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    event_data TEXT,
    created_at DOUBLE PRECISION NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_email_logs_queue ON email_logs (queue_id);
"""


def _new_id() -> str:
    return str(uuid.uuid4())


class QueueStore:
    """Async store for queue rows, health snapshots and processing logs.

    Attributes:
        db: The SQL adapter every query goes through.
    """

    def __init__(self, db: str | DbAdapter = "/data/email_queue.db"):
        """Initialize the store.

        Args:
            db: A connection string understood by
                :func:`async_email_queue.sql.create_adapter` or a ready adapter.
        """
        self.db = create_adapter(db) if isinstance(db, str) else db

    async def init_db(self) -> None:
        """Create tables and indexes. Safe to call repeatedly."""
        await self.db.connect()
        await self.db.execute_script(SCHEMA)

    async def close(self) -> None:
        await self.db.close()

    # ------------------------------------------------------------------ jobs
    async def insert_jobs(
        self,
        entries: Sequence[EmailJobCreate],
        *,
        now: float,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> list[str]:
        """Insert new ``pending`` jobs in one transaction and return their ids."""
        rows: list[dict[str, Any]] = []
        for entry in entries:
            rows.append(
                {
                    "id": entry.id or _new_id(),
                    "recipient_email": join_recipients(entry.recipient_email),
                    "subject": entry.subject,
                    "body": entry.body,
                    "template_id": entry.template_id,
                    "rule_id": entry.rule_id,
                    "source_table": entry.source_table,
                    "record_id": entry.record_id,
                    "school_id": entry.school_id,
                    "status": EmailStatus.PENDING.value,
                    "scheduled_at": entry.scheduled_at if entry.scheduled_at is not None else now,
                    "max_retries": entry.max_retries if entry.max_retries is not None else default_max_retries,
                    "created_at": now,
                    "updated_at": now,
                }
            )
        await self.db.execute_many(
            """
            INSERT INTO email_queue (
                id, seq, recipient_email, subject, body, template_id, rule_id,
                source_table, record_id, school_id, status, scheduled_at,
                retry_count, max_retries, created_at, updated_at
            ) VALUES (
                :id, (SELECT COALESCE(MAX(seq), 0) + 1 FROM email_queue),
                :recipient_email, :subject, :body, :template_id, :rule_id,
                :source_table, :record_id, :school_id, :status, :scheduled_at,
                0, :max_retries, :created_at, :updated_at
            )
            """,
            rows,
        )
        return [row["id"] for row in rows]

    async def get_job(self, job_id: str) -> EmailJob | None:
        row = await self.db.fetch_one("SELECT * FROM email_queue WHERE id = :id", {"id": job_id})
        return EmailJob.from_row(row) if row else None

    async def list_jobs(
        self,
        *,
        school_id: str | None = None,
        status: EmailStatus | str | None = None,
        limit: int | None = None,
    ) -> list[EmailJob]:
        """List jobs newest first, optionally filtered by school and status."""
        clauses: list[str] = []
        params: dict[str, Any] = {}
        if school_id:
            clauses.append("school_id = :school_id")
            params["school_id"] = school_id
        if status:
            clauses.append("status = :status")
            params["status"] = EmailStatus(status).value
        query = "SELECT * FROM email_queue"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC, seq DESC"
        if limit:
            query += " LIMIT :limit"
            params["limit"] = int(limit)
        rows = await self.db.fetch_all(query, params)
        return [EmailJob.from_row(row) for row in rows]

    async def delete_job(self, job_id: str) -> bool:
        """Physically remove a job and its event trail (operator action only)."""
        removed = await self.db.execute("DELETE FROM email_queue WHERE id = :id", {"id": job_id})
        if removed:
            await self.db.execute("DELETE FROM email_logs WHERE queue_id = :id", {"id": job_id})
        return removed > 0

    async def count_by_status(self) -> dict[str, int]:
        rows = await self.db.fetch_all(
            "SELECT status, COUNT(*) AS total FROM email_queue GROUP BY status"
        )
        counts = {status.value: 0 for status in EmailStatus}
        for row in rows:
            counts[row["status"]] = int(row["total"])
        return counts

    async def latest_sent_at(self) -> float | None:
        """Newest ``sent_at`` across every school, or None when nothing was sent."""
        row = await self.db.fetch_one("SELECT MAX(sent_at) AS latest FROM email_queue")
        if not row or row["latest"] is None:
            return None
        return float(row["latest"])

    # ------------------------------------------------------------- selection
    async def fetch_due(self, *, limit: int, now: float) -> list[EmailJob]:
        """Eligible jobs (``pending`` and ``scheduled_at <= now``), oldest first."""
        rows = await self.db.fetch_all(
            """
            SELECT * FROM email_queue
            WHERE status = :status AND scheduled_at <= :now
            ORDER BY created_at ASC, seq ASC
            LIMIT :limit
            """,
            {"status": EmailStatus.PENDING.value, "now": now, "limit": int(limit)},
        )
        return [EmailJob.from_row(row) for row in rows]

    async def fetch_stuck(self, *, older_than: float) -> list[EmailJob]:
        """Jobs in ``processing`` whose last attempt started before ``older_than``."""
        rows = await self.db.fetch_all(
            """
            SELECT * FROM email_queue
            WHERE status = :status AND last_attempt_at < :threshold
            ORDER BY last_attempt_at ASC, id ASC
            """,
            {"status": EmailStatus.PROCESSING.value, "threshold": older_than},
        )
        return [EmailJob.from_row(row) for row in rows]

    async def fetch_rate_limited_due(self, *, now: float) -> list[EmailJob]:
        rows = await self.db.fetch_all(
            """
            SELECT * FROM email_queue
            WHERE status = :status AND (next_retry_at IS NULL OR next_retry_at <= :now)
            ORDER BY created_at ASC, seq ASC
            """,
            {"status": EmailStatus.RATE_LIMITED.value, "now": now},
        )
        return [EmailJob.from_row(row) for row in rows]

    # ------------------------------------------------------------ transitions
    async def transition(
        self,
        job_id: str,
        current: EmailStatus,
        target: EmailStatus,
        *,
        now: float,
        values: dict[str, Any] | None = None,
        expect: dict[str, Any] | None = None,
    ) -> bool:
        """Apply one conditional status change.

        Args:
            job_id: The job to update.
            current: Status the caller observed; the row must still have it.
            target: New status; ``current -> target`` must be a legal edge.
            now: Timestamp written to ``updated_at``.
            values: Extra columns to set.
            expect: Extra column values the row must still hold
                (compare-and-set guard, e.g. the observed ``retry_count``).

        Returns:
            True if this call applied the change, False if the row had
            already moved on (or does not exist).

        Raises:
            InvalidTransitionError: If the edge is not allowed.
        """
        current.check_transition(target)
        assignments = {"status": target.value, "updated_at": now, **(values or {})}
        params: dict[str, Any] = {"id": job_id, "expected_status": current.value}
        set_parts = []
        for column, value in assignments.items():
            params[f"set_{column}"] = value
            set_parts.append(f"{column} = :set_{column}")
        where_parts = ["id = :id", "status = :expected_status"]
        for column, value in (expect or {}).items():
            params[f"expect_{column}"] = value
            where_parts.append(f"{column} = :expect_{column}")
        query = (
            f"UPDATE email_queue SET {', '.join(set_parts)} "
            f"WHERE {' AND '.join(where_parts)}"
        )
        return await self.db.execute(query, params) > 0

    async def claim(self, job_id: str, *, now: float) -> bool:
        """``pending -> processing``, stamping ``last_attempt_at``."""
        return await self.transition(
            job_id,
            EmailStatus.PENDING,
            EmailStatus.PROCESSING,
            now=now,
            values={"last_attempt_at": now},
        )

    async def mark_sent(self, job_id: str, *, sent_at: float, provider_message_id: str | None = None) -> bool:
        return await self.transition(
            job_id,
            EmailStatus.PROCESSING,
            EmailStatus.SENT,
            now=sent_at,
            values={
                "sent_at": sent_at,
                "error_message": None,
                "next_retry_at": None,
                "provider_message_id": provider_message_id,
            },
        )

    async def mark_failed(self, job_id: str, *, error: str, now: float) -> bool:
        return await self.transition(
            job_id,
            EmailStatus.PROCESSING,
            EmailStatus.FAILED,
            now=now,
            values={"error_message": error or "unknown error", "next_retry_at": None},
        )

    async def mark_rate_limited(self, job_id: str, *, error: str, next_retry_at: float, now: float) -> bool:
        return await self.transition(
            job_id,
            EmailStatus.PROCESSING,
            EmailStatus.RATE_LIMITED,
            now=now,
            values={"error_message": error or "rate limited", "next_retry_at": next_retry_at},
        )

    async def requeue(self, job: EmailJob, *, now: float, scheduled_at: float) -> bool:
        """Move a job back to ``pending`` consuming one retry.

        Valid from ``processing`` (stuck reclaim), ``rate_limited`` (release)
        and ``failed`` (operator retry). Guarded on the observed
        ``retry_count`` so that two concurrent reclaimers count once.
        """
        return await self.transition(
            job.id,
            job.status,
            EmailStatus.PENDING,
            now=now,
            values={
                "retry_count": job.retry_count + 1,
                "error_message": None,
                "scheduled_at": max(job.scheduled_at, scheduled_at),
                "next_retry_at": scheduled_at,
            },
            expect={"retry_count": job.retry_count},
        )

    async def fail_exhausted(self, job: EmailJob, *, now: float) -> bool:
        """Terminal ``failed`` for a job whose retry budget is spent."""
        return await self.transition(
            job.id,
            job.status,
            EmailStatus.FAILED,
            now=now,
            values={"error_message": MAX_RETRIES_EXCEEDED, "next_retry_at": None},
            expect={"retry_count": job.retry_count},
        )

    async def cancel(self, job_id: str, *, now: float) -> bool:
        return await self.transition(job_id, EmailStatus.PENDING, EmailStatus.CANCELLED, now=now)

    # ------------------------------------------------------------------ health
    async def aggregate_health(self, *, stuck_before: float, sent_since: float) -> list[dict[str, Any]]:
        """Per-school counters read in a single statement.

        Args:
            stuck_before: ``processing`` jobs whose last attempt is older than
                this are counted as stuck.
            sent_since: Only jobs sent after this instant contribute to the
                average processing time.

        Returns:
            One dict per school with any row in ``email_queue``.
        """
        rows = await self.db.fetch_all(
            """
            SELECT
                school_id,
                SUM(CASE WHEN status = :pending THEN 1 ELSE 0 END) AS pending_count,
                SUM(CASE WHEN status = :processing AND last_attempt_at < :stuck_before
                         THEN 1 ELSE 0 END) AS stuck_count,
                SUM(CASE WHEN status = :failed THEN 1 ELSE 0 END) AS failed_count,
                AVG(CASE WHEN status = :sent AND sent_at >= :sent_since
                         THEN (sent_at - created_at) * 1000.0 END) AS processing_time_avg_ms
            FROM email_queue
            GROUP BY school_id
            ORDER BY school_id
            """,
            {
                "pending": EmailStatus.PENDING.value,
                "processing": EmailStatus.PROCESSING.value,
                "failed": EmailStatus.FAILED.value,
                "sent": EmailStatus.SENT.value,
                "stuck_before": stuck_before,
                "sent_since": sent_since,
            },
        )
        return [
            {
                "school_id": row["school_id"],
                "pending_count": int(row["pending_count"] or 0),
                "stuck_count": int(row["stuck_count"] or 0),
                "failed_count": int(row["failed_count"] or 0),
                "processing_time_avg_ms": (
                    float(row["processing_time_avg_ms"])
                    if row["processing_time_avg_ms"] is not None
                    else None
                ),
            }
            for row in rows
        ]

    async def insert_health_snapshots(self, snapshots: Sequence[HealthSnapshot], *, now: float) -> list[str]:
        """Append all snapshots of one health pass in a single transaction."""
        rows = []
        for snapshot in snapshots:
            snapshot_id = snapshot.id or _new_id()
            snapshot.id = snapshot_id
            rows.append(
                {
                    "id": snapshot_id,
                    "school_id": snapshot.school_id,
                    "check_timestamp": snapshot.check_timestamp,
                    "pending_count": snapshot.pending_count,
                    "stuck_count": snapshot.stuck_count,
                    "failed_count": snapshot.failed_count,
                    "processing_time_avg_ms": snapshot.processing_time_avg_ms,
                    "health_status": snapshot.health_status.value,
                    "created_at": now,
                }
            )
        await self.db.execute_many(
            """
            INSERT INTO email_queue_health (
                id, school_id, check_timestamp, pending_count, stuck_count,
                failed_count, processing_time_avg_ms, health_status, created_at
            ) VALUES (
                :id, :school_id, :check_timestamp, :pending_count, :stuck_count,
                :failed_count, :processing_time_avg_ms, :health_status, :created_at
            )
            """,
            rows,
        )
        return [row["id"] for row in rows]

    async def list_health_history(self, *, school_id: str | None = None, limit: int = 100) -> list[HealthSnapshot]:
        """Recent snapshots, newest ``check_timestamp`` first."""
        params: dict[str, Any] = {"limit": int(limit)}
        query = "SELECT * FROM email_queue_health"
        if school_id:
            query += " WHERE school_id = :school_id"
            params["school_id"] = school_id
        query += " ORDER BY check_timestamp DESC, id DESC LIMIT :limit"
        rows = await self.db.fetch_all(query, params)
        return [
            HealthSnapshot.model_validate({k: v for k, v in row.items() if k != "created_at"})
            for row in rows
        ]

    # -------------------------------------------------------------------- logs
    async def insert_processing_log(
        self,
        *,
        request_id: str,
        processed_count: int,
        failed_count: int,
        status: str,
        processed_at: float,
    ) -> str:
        log_id = _new_id()
        await self.db.execute(
            """
            INSERT INTO email_processing_log (id, request_id, processed_count, failed_count, status, processed_at)
            VALUES (:id, :request_id, :processed_count, :failed_count, :status, :processed_at)
            """,
            {
                "id": log_id,
                "request_id": request_id,
                "processed_count": processed_count,
                "failed_count": failed_count,
                "status": status,
                "processed_at": processed_at,
            },
        )
        return log_id

    async def list_processing_logs(self, *, limit: int = 50) -> list[dict[str, Any]]:
        return await self.db.fetch_all(
            "SELECT * FROM email_processing_log ORDER BY processed_at DESC, id DESC LIMIT :limit",
            {"limit": int(limit)},
        )

    async def log_event(self, queue_id: str, event_type: str, data: dict[str, Any], *, now: float) -> None:
        await self.db.execute(
            """
            INSERT INTO email_logs (id, seq, queue_id, event_type, event_data, created_at)
            VALUES (
                :id, (SELECT COALESCE(MAX(seq), 0) + 1 FROM email_logs),
                :queue_id, :event_type, :event_data, :created_at
            )
            """,
            {
                "id": _new_id(),
                "queue_id": queue_id,
                "event_type": event_type,
                "event_data": json.dumps(data, default=str),
                "created_at": now,
            },
        )

    async def list_events(self, queue_id: str) -> list[dict[str, Any]]:
        rows = await self.db.fetch_all(
            "SELECT * FROM email_logs WHERE queue_id = :queue_id ORDER BY created_at ASC, seq ASC",
            {"queue_id": queue_id},
        )
        for row in rows:
            raw = row.get("event_data")
            row["event_data"] = json.loads(raw) if raw else {}
        return rows
