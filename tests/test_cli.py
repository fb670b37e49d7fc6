"""Tests for CLI commands."""

import json
import os

import pytest
from click.testing import CliRunner

from async_email_queue.cli import main, print_error, print_success, run_async


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def db_args(tmp_path, monkeypatch):
    monkeypatch.delenv("EMAIL_QUEUE_CONFIG", raising=False)
    monkeypatch.delenv("EMAIL_QUEUE_API_KEY", raising=False)
    return ["--config", str(tmp_path / "missing.ini"), "--db", str(tmp_path / "cli.db"), "--log-level", "ERROR"]


def enqueue(runner, db_args, *extra):
    result = runner.invoke(
        main,
        db_args
        + [
            "enqueue",
            "--to", "parent@example.com",
            "--subject", "Trip",
            "--body", "<p>Bus at 8</p>",
            "--school", "s1",
            "--json",
            *extra,
        ],
    )
    assert result.exit_code == 0, result.output
    return json.loads(result.output)["ids"][0]


def test_helpers(capsys):
    async def answer():
        return 42

    assert run_async(answer()) == 42
    print_success("done")
    print_error("broken")
    captured = capsys.readouterr()
    assert "done" in captured.out
    assert "broken" in captured.err


def test_enqueue_list_and_show(runner, db_args):
    job_id = enqueue(runner, db_args)

    listed = runner.invoke(main, db_args + ["list", "--json"])
    assert listed.exit_code == 0
    jobs = json.loads(listed.output)
    assert [job["id"] for job in jobs] == [job_id]
    assert jobs[0]["status"] == "pending"

    table = runner.invoke(main, db_args + ["list"])
    assert table.exit_code == 0
    assert "Email queue" in table.output

    shown = runner.invoke(main, db_args + ["show", job_id])
    assert shown.exit_code == 0
    assert "parent@example.com" in shown.output


def test_enqueue_requires_body(runner, db_args):
    result = runner.invoke(
        main, db_args + ["enqueue", "--to", "a@x.org", "--subject", "S", "--school", "s1"]
    )
    assert result.exit_code == 1


def test_enqueue_rejects_invalid_schedule(runner, db_args):
    result = runner.invoke(
        main,
        db_args
        + ["enqueue", "--to", "a@x.org", "--subject", "S", "--body", "B", "--school", "s1",
           "--scheduled-at", "not-a-date"],
    )
    assert result.exit_code == 1


def test_show_missing_job(runner, db_args):
    result = runner.invoke(main, db_args + ["show", "missing"])
    assert result.exit_code == 1


def test_cancel_and_delete(runner, db_args):
    job_id = enqueue(runner, db_args)
    assert runner.invoke(main, db_args + ["cancel", job_id]).exit_code == 0
    assert runner.invoke(main, db_args + ["cancel", job_id]).exit_code == 1

    aborted = runner.invoke(main, db_args + ["delete", job_id], input="n\n")
    assert "Aborted" in aborted.output
    assert runner.invoke(main, db_args + ["delete", job_id, "--force"]).exit_code == 0
    assert runner.invoke(main, db_args + ["show", job_id]).exit_code == 1


def test_process_batch_records_transport_failures(runner, db_args):
    # Without an API key every send fails and is recorded on the job.
    job_id = enqueue(runner, db_args)

    result = runner.invoke(main, db_args + ["process-batch", "--json"])
    assert result.exit_code == 0, result.output
    summary = json.loads(result.output)
    assert summary["processed_count"] == 0
    assert summary["failed_count"] == 1

    shown = json.loads(runner.invoke(main, db_args + ["show", job_id, "--json"]).output)
    assert shown["status"] == "failed"
    assert shown["error_message"] == "Email API key is not configured"

    retried = runner.invoke(main, db_args + ["retry", job_id])
    assert retried.exit_code == 0
    assert "retry 1/3" in retried.output

    events = json.loads(runner.invoke(main, db_args + ["show", job_id, "--events", "--json"]).output)
    assert [e["event_type"] for e in events["events"]] == ["failed", "retried"]


def test_retry_stuck_and_health(runner, db_args):
    enqueue(runner, db_args)

    stuck = runner.invoke(main, db_args + ["retry-stuck", "--json"])
    assert stuck.exit_code == 0
    assert json.loads(stuck.output) == []

    health = runner.invoke(main, db_args + ["check-health", "--json"])
    assert health.exit_code == 0
    data = json.loads(health.output)
    assert data["snapshots"][0]["school_id"] == "s1"
    assert data["snapshots"][0]["health_status"] == "healthy"

    history = runner.invoke(main, db_args + ["health-history", "--json"])
    assert history.exit_code == 0
    assert len(json.loads(history.output)) == 1

    assert runner.invoke(main, db_args + ["health-history"]).exit_code == 0


def test_check_health_on_empty_queue(runner, db_args):
    result = runner.invoke(main, db_args + ["check-health"])
    assert result.exit_code == 0
    assert "nothing to check" in result.output


def test_serve_reload_refuses_overrides_it_cannot_apply(runner, db_args, monkeypatch):
    import uvicorn

    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))

    result = runner.invoke(main, db_args + ["serve", "--reload"])
    assert result.exit_code == 2
    assert "--reload cannot apply --db or --log-level" in result.output
    assert calls == []


def test_serve_reload_forwards_config_path(runner, tmp_path, monkeypatch):
    import uvicorn

    config = tmp_path / "queue.ini"
    config.write_text("[server]\nport = 8123\n")
    monkeypatch.setenv("EMAIL_QUEUE_CONFIG", "unused.ini")
    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda *args, **kwargs: calls.append((args, kwargs)))

    result = runner.invoke(main, ["--config", str(config), "serve", "--reload"])
    assert result.exit_code == 0, result.output
    (args, kwargs), = calls
    assert args == ("async_email_queue.server:app",)
    assert kwargs["port"] == 8123
    assert kwargs["reload"] is True
    assert os.environ["EMAIL_QUEUE_CONFIG"] == str(config.resolve())
