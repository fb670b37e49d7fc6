import logging

from async_email_queue.config_loader import QueueSettings, _parse_bool, _parse_delays, load_settings


def test_defaults_without_file_or_env(tmp_path):
    settings = load_settings(tmp_path / "missing.ini", environ={})
    assert settings == QueueSettings()
    assert settings.retry_policy().max_retries == 3
    assert settings.health_thresholds().backlog_warning == 50
    assert settings.retry_policy().calculate_delay(0) == 120


def test_environment_fallbacks(tmp_path):
    env = {
        "EMAIL_QUEUE_DB_PATH": "postgresql://user:pw@db/emails",
        "EMAIL_QUEUE_API_TOKEN": "token",
        "EMAIL_QUEUE_PORT": "9000",
        "EMAIL_QUEUE_TRANSPORT": "smtp",
        "EMAIL_QUEUE_SMTP_HOST": "smtp.example.com",
        "EMAIL_QUEUE_SMTP_USE_TLS": "no",
        "EMAIL_QUEUE_MAX_RETRIES": "5",
        "EMAIL_QUEUE_BACKOFF_SECONDS": "60, 300;900",
        "EMAIL_QUEUE_SCHEDULER_ACTIVE": "true",
        "EMAIL_QUEUE_LOG_LEVEL": "debug",
    }
    settings = load_settings(tmp_path / "missing.ini", environ=env)
    assert settings.db_path == "postgresql://user:pw@db/emails"
    assert settings.api_token == "token"
    assert settings.port == 9000
    assert settings.transport_kind == "smtp"
    assert settings.smtp_use_tls is False
    assert settings.max_retries == 5
    assert settings.backoff_seconds == (60.0, 300.0, 900.0)
    assert settings.scheduler_active is True
    assert settings.log_level == "DEBUG"
    assert settings.transport_options()["smtp_host"] == "smtp.example.com"


def test_file_values_win_over_environment(tmp_path):
    config = tmp_path / "config.ini"
    config.write_text(
        "[storage]\n"
        f"db_path = {tmp_path / 'queue.db'}\n"
        "[dispatch]\n"
        "batch_size = 25\n"
        "min_send_interval = 0.5\n"
        "[retry]\n"
        "stuck_threshold_minutes = 15\n"
        "[health]\n"
        "backlog_warning = 10\n"
        "failed_critical = 3\n"
    )
    env = {"EMAIL_QUEUE_BATCH_SIZE": "99", "EMAIL_QUEUE_FAILED_CRITICAL": "50"}
    settings = load_settings(config, environ=env)
    assert settings.db_path == str(tmp_path / "queue.db")
    assert settings.batch_size == 25
    assert settings.min_send_interval == 0.5
    assert settings.failed_critical == 3
    assert settings.retry_policy().stuck_threshold_minutes == 15
    assert settings.health_thresholds().stuck_threshold_minutes == 15
    assert settings.health_thresholds().backlog_warning == 10


def test_config_path_from_environment(tmp_path):
    config = tmp_path / "custom.ini"
    config.write_text("[server]\nport = 8123\n")
    settings = load_settings(environ={"EMAIL_QUEUE_CONFIG": str(config)})
    assert settings.port == 8123


def test_parse_helpers(caplog):
    assert _parse_bool(None, True) is True
    assert _parse_bool("off", True) is False
    with caplog.at_level(logging.WARNING):
        assert _parse_bool("maybe", False) is False
    assert "Invalid boolean value" in caplog.text
    assert _parse_delays("") == ()
    assert _parse_delays("1, 2,") == (1.0, 2.0)
