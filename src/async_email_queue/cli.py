# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the email queue.

This module provides a CLI for operators to enqueue, inspect and repair
queued emails directly against the queue database, without going through
the HTTP API.

Usage:
    email-queue enqueue --to parent@example.com --subject "Hello" --body "<p>Hi</p>" --school s1
    email-queue list --status failed
    email-queue show <job_id> --events
    email-queue retry <job_id>
    email-queue process-batch --batch-size 20
    email-queue retry-stuck --max-age-minutes 15
    email-queue check-health
    email-queue serve --port 8000

Every command reads the same settings as the server (``config.ini`` and
``EMAIL_QUEUE_*`` environment variables); ``--db`` overrides the database.
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.table import Table

from .config_loader import ENV_PREFIX, QueueSettings, load_settings
from .core import EmailQueueCore
from .logger import configure_logging
from .models import EmailStatus, HealthStatus

console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    EmailStatus.PENDING.value: "blue",
    EmailStatus.PROCESSING.value: "cyan",
    EmailStatus.SENT.value: "green",
    EmailStatus.FAILED.value: "red",
    EmailStatus.CANCELLED.value: "dim",
    EmailStatus.RATE_LIMITED.value: "yellow",
    HealthStatus.HEALTHY.value: "green",
    HealthStatus.WARNING.value: "yellow",
    HealthStatus.CRITICAL.value: "red",
}


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _styled(status: Optional[str]) -> str:
    if not status:
        return "-"
    style = STATUS_STYLES.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


def _run_command(settings: QueueSettings, cmd: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Open the queue, run one core command and close it again.

    Exits with status 1 when the command reports ``ok: False``.
    """

    async def _run():
        core = EmailQueueCore.from_settings(settings)
        await core.init()
        try:
            return await core.handle_command(cmd, payload or {})
        finally:
            await core.stop()

    result = run_async(_run())
    if not result.get("ok"):
        print_error(result.get("error") or "command failed")
        sys.exit(1)
    return result


@click.group()
@click.version_option(package_name="async-email-queue")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="INI configuration file (default: $EMAIL_QUEUE_CONFIG or config.ini).")
@click.option("--db", "db_path", default=None, help="Queue database; overrides the configured db_path.")
@click.option("--log-level", default=None, help="Logging level (default: from configuration).")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str], log_level: Optional[str]) -> None:
    """email-queue: operate the transactional email queue."""
    settings = load_settings(config_path)
    if db_path:
        settings.db_path = db_path
    configure_logging(log_level or settings.log_level)
    ctx.obj = settings


# ============================================================================
# Queue commands
# ============================================================================

@main.command("enqueue")
@click.option("--to", "recipients", multiple=True, required=True, help="Recipient address (repeatable).")
@click.option("--subject", "-s", required=True, help="Message subject.")
@click.option("--body", "-b", help="HTML body.")
@click.option("--body-file", type=click.Path(exists=True, dir_okay=False), help="Read the HTML body from a file.")
@click.option("--school", "school_id", required=True, help="Owning school id.")
@click.option("--scheduled-at", help="Earliest dispatch time (ISO-8601 or epoch seconds).")
@click.option("--max-retries", type=int, help="Retry budget (default: from configuration).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def enqueue(
    settings: QueueSettings,
    recipients: tuple[str, ...],
    subject: str,
    body: Optional[str],
    body_file: Optional[str],
    school_id: str,
    scheduled_at: Optional[str],
    max_retries: Optional[int],
    as_json: bool,
) -> None:
    """Queue one email."""
    if body_file:
        body = Path(body_file).read_text()
    if body is None:
        print_error("Either --body or --body-file is required.")
        sys.exit(1)

    job: Dict[str, Any] = {
        "recipient_email": list(recipients),
        "subject": subject,
        "body": body,
        "school_id": school_id,
    }
    if scheduled_at:
        job["scheduled_at"] = scheduled_at
    if max_retries is not None:
        job["max_retries"] = max_retries

    result = _run_command(settings, "enqueue", {"jobs": [job]})
    if as_json:
        print_json(result)
        return
    print_success(f"Queued email {result['ids'][0]}")


@main.command("list")
@click.option("--school", "school_id", help="Filter by school id.")
@click.option("--status", type=click.Choice([s.value for s in EmailStatus]), help="Filter by status.")
@click.option("--limit", "-l", type=int, default=50, help="Max jobs to show.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def list_jobs(settings: QueueSettings, school_id: Optional[str], status: Optional[str], limit: int,
              as_json: bool) -> None:
    """List queued emails, newest first."""
    jobs = _run_command(settings, "listJobs", {"school_id": school_id, "status": status, "limit": limit})["jobs"]

    if as_json:
        print_json(jobs)
        return

    if not jobs:
        console.print("[dim]No emails found.[/dim]")
        return

    table = Table(title=f"Email queue (showing up to {limit})")
    table.add_column("ID", style="cyan")
    table.add_column("School")
    table.add_column("Status")
    table.add_column("Recipient", max_width=30)
    table.add_column("Subject", max_width=30)
    table.add_column("Retries", justify="right")
    table.add_column("Created")

    for job in jobs:
        table.add_row(
            job["id"],
            job["school_id"],
            _styled(job["status"]),
            job["recipient_email"],
            job["subject"][:30],
            f"{job['retry_count']}/{job['max_retries']}",
            job.get("created_at") or "-",
        )

    console.print(table)


@main.command("show")
@click.argument("job_id")
@click.option("--events", is_flag=True, help="Include the job's event trail.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def show_job(settings: QueueSettings, job_id: str, events: bool, as_json: bool) -> None:
    """Show one queued email."""
    job = _run_command(settings, "getJob", {"id": job_id})["job"]
    trail = _run_command(settings, "jobEvents", {"id": job_id})["events"] if events else None

    if as_json:
        print_json({"job": job, "events": trail} if events else job)
        return

    console.print(f"\n[bold cyan]Email: {job['id']}[/bold cyan]\n")
    console.print(f"  School:       {job['school_id']}")
    console.print(f"  Status:       {_styled(job['status'])}")
    console.print(f"  Recipients:   {job['recipient_email']}")
    console.print(f"  Subject:      {job['subject']}")
    console.print(f"  Scheduled:    {job.get('scheduled_at') or '-'}")
    console.print(f"  Last attempt: {job.get('last_attempt_at') or '-'}")
    console.print(f"  Sent:         {job.get('sent_at') or '-'}")
    console.print(f"  Retries:      {job['retry_count']}/{job['max_retries']}")
    if job.get("error_message"):
        console.print(f"  Error:        [red]{job['error_message']}[/red]")
    if job.get("provider_message_id"):
        console.print(f"  Provider id:  {job['provider_message_id']}")

    if trail:
        console.print("\n  [bold]Events:[/bold]")
        for event in trail:
            console.print(f"    {event['event_type']}: {json.dumps(event['event_data'], default=str)}")
    console.print()


@main.command("cancel")
@click.argument("job_id")
@click.pass_obj
def cancel_job(settings: QueueSettings, job_id: str) -> None:
    """Cancel a pending email."""
    _run_command(settings, "cancelJob", {"id": job_id})
    print_success(f"Email '{job_id}' cancelled.")


@main.command("retry")
@click.argument("job_id")
@click.pass_obj
def retry_job(settings: QueueSettings, job_id: str) -> None:
    """Put a failed email back in the queue (consumes one retry)."""
    job = _run_command(settings, "retryJob", {"id": job_id})["job"]
    print_success(f"Email '{job_id}' re-queued (retry {job['retry_count']}/{job['max_retries']}).")


@main.command("delete")
@click.argument("job_id")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
@click.pass_obj
def delete_job(settings: QueueSettings, job_id: str, force: bool) -> None:
    """Delete an email and its event trail."""
    if not force:
        if not click.confirm(f"Delete email '{job_id}'?"):
            console.print("Aborted.")
            return
    _run_command(settings, "deleteJob", {"id": job_id})
    print_success(f"Email '{job_id}' deleted.")


# ============================================================================
# Pipeline commands
# ============================================================================

@main.command("process-batch")
@click.option("--batch-size", type=click.IntRange(1, 500), default=None,
              help="Max emails to dispatch (default: from configuration).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def process_batch(settings: QueueSettings, batch_size: Optional[int], as_json: bool) -> None:
    """Dispatch due emails once."""
    result = _run_command(settings, "processBatch", {"batch_size": batch_size})

    if as_json:
        print_json({k: v for k, v in result.items() if k != "ok"})
        return

    console.print(
        f"Sent [green]{result['processed_count']}[/green], "
        f"failed [red]{result['failed_count']}[/red], "
        f"skipped {result['skipped_count']}"
    )
    for detail in result["details"]:
        line = f"  {detail['id']} {_styled(detail['status'])} {detail['recipient']}"
        if detail.get("error"):
            line += f" [dim]({detail['error']})[/dim]"
        console.print(line)


@main.command("retry-stuck")
@click.option("--max-age-minutes", type=float, default=None,
              help="Reclaim jobs processing for longer than this (default: from configuration).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def retry_stuck(settings: QueueSettings, max_age_minutes: Optional[float], as_json: bool) -> None:
    """Reclaim emails stuck in processing."""
    results = _run_command(settings, "retryStuck", {"max_age_minutes": max_age_minutes})["results"]

    if as_json:
        print_json(results)
        return

    if not results:
        console.print("[dim]No stuck emails.[/dim]")
        return

    table = Table(title="Reclaimed emails")
    table.add_column("ID", style="cyan")
    table.add_column("School")
    table.add_column("Retries", justify="right")
    table.add_column("Status")
    for row in results:
        table.add_row(row["email_id"], row["school_id"], str(row["retry_count"]), _styled(row["status"]))
    console.print(table)


@main.command("check-health")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def check_health(settings: QueueSettings, as_json: bool) -> None:
    """Record and show a health snapshot per school.

    Exits with status 2 when any school is critical.
    """
    result = _run_command(settings, "checkHealth")

    if as_json:
        print_json({"snapshots": result["snapshots"], "summary": result["summary"]})
    elif not result["snapshots"]:
        console.print("[dim]Queue is empty, nothing to check.[/dim]")
    else:
        _print_health_table("Queue health", result["snapshots"])

    if result["summary"]["critical"]:
        sys.exit(2)


@main.command("health-history")
@click.option("--school", "school_id", help="Filter by school id.")
@click.option("--limit", "-l", type=int, default=100, help="Max snapshots to show.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def health_history(settings: QueueSettings, school_id: Optional[str], limit: int, as_json: bool) -> None:
    """Show recorded health snapshots, newest first."""
    history = _run_command(settings, "healthHistory", {"school_id": school_id, "limit": limit})["history"]

    if as_json:
        print_json(history)
        return

    if not history:
        console.print("[dim]No health snapshots recorded.[/dim]")
        return
    _print_health_table(f"Health history (showing up to {limit})", history, with_time=True)


def _print_health_table(title: str, rows: list, with_time: bool = False) -> None:
    table = Table(title=title)
    if with_time:
        table.add_column("Checked")
    table.add_column("School", style="cyan")
    table.add_column("Status")
    table.add_column("Pending", justify="right")
    table.add_column("Stuck", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Avg ms", justify="right")
    for row in rows:
        avg = row.get("processing_time_avg_ms")
        cells = [
            row["school_id"],
            _styled(row["health_status"]),
            str(row["pending_count"]),
            str(row["stuck_count"]),
            str(row["failed_count"]),
            f"{avg:.0f}" if avg is not None else "-",
        ]
        if with_time:
            cells.insert(0, str(row["check_timestamp"]))
        table.add_row(*cells)
    console.print(table)


# ============================================================================
# Server
# ============================================================================

@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default: from configuration).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: from configuration).")
@click.option("--reload", is_flag=True, help="Enable auto-reload for development.")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], reload: bool) -> None:
    """Run the HTTP API and the background scheduler.

    With ``--reload`` the worker re-imports ``async_email_queue.server``, which
    only sees the configuration file and ``EMAIL_QUEUE_*`` variables: ``--config``
    is forwarded through ``EMAIL_QUEUE_CONFIG``, ``--db`` and ``--log-level``
    are refused.
    """
    import uvicorn

    settings: QueueSettings = ctx.obj
    if reload:
        group_params = ctx.parent.params if ctx.parent is not None else {}
        if group_params.get("db_path") or group_params.get("log_level"):
            raise click.UsageError(
                "--reload cannot apply --db or --log-level; set db_path and the log level "
                "in the configuration file or via EMAIL_QUEUE_DB_PATH / EMAIL_QUEUE_LOG_LEVEL."
            )
        if group_params.get("config_path"):
            os.environ[f"{ENV_PREFIX}CONFIG"] = str(Path(group_params["config_path"]).resolve())

    console.print(f"[bold cyan]Serving email queue on {host or settings.host}:{port or settings.port}[/bold cyan]")
    if reload:
        uvicorn.run(
            "async_email_queue.server:app",
            host=host or settings.host,
            port=port or settings.port,
            reload=True,
            log_level=settings.log_level.lower(),
        )
        return

    from .server import build_app

    uvicorn.run(
        build_app(settings),
        host=host or settings.host,
        port=port or settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
