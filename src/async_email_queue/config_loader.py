# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loading for the email queue.

Settings come from an INI file (default ``config.ini``, overridable with
``EMAIL_QUEUE_CONFIG``) with ``EMAIL_QUEUE_*`` environment variables as
fallbacks for every key. Values in the file win over the environment.

Example:
    Configuration file format (config.ini)::

        [storage]
        db_path = /data/email_queue.db

        [server]
        host = 0.0.0.0
        port = 8000
        api_token = change-me

        [transport]
        kind = http
        api_key = re_xxx
        from_address = School Notifications <noreply@school.org>

        [dispatch]
        batch_size = 10
        min_send_interval = 2
        dispatch_interval = 60
        scheduler_active = true

        [retry]
        max_retries = 3
        stuck_threshold_minutes = 10
        backoff_seconds = 120, 240, 480

        [health]
        backlog_warning = 50
        failed_critical = 10
        check_interval = 300

    Loading::

        settings = load_settings()
        settings.retry_policy()
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .health import HealthThresholds
from .logger import get_logger
from .retry import DEFAULT_BACKOFF_SECONDS, RetryPolicy

ENV_PREFIX = "EMAIL_QUEUE_"

logger = get_logger("ConfigLoader")


@dataclass
class QueueSettings:
    """Resolved runtime configuration.

    Attributes mirror the INI keys; see the module docstring for sections.
    """

    # storage
    db_path: str = "/data/email_queue.db"

    # server
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None

    # transport
    transport_kind: str = "http"
    api_url: str | None = None
    api_key: str | None = None
    from_address: str | None = None
    smtp_host: str | None = None
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_use_tls: bool = True
    transport_timeout: float = 30.0

    # dispatch
    batch_size: int = 10
    min_send_interval: float = 2.0
    dispatch_interval: float = 60.0
    scheduler_active: bool = False
    test_mode: bool = False

    # retry
    max_retries: int = 3
    stuck_threshold_minutes: float = 10.0
    backoff_seconds: tuple[float, ...] = DEFAULT_BACKOFF_SECONDS
    rate_limited_delay: float = 60.0

    # health
    backlog_warning: int = 50
    failed_critical: int = 10
    health_check_interval: float = 300.0

    # logging
    log_level: str = "INFO"
    log_delivery_activity: bool = False

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            backoff_seconds=self.backoff_seconds,
            stuck_threshold_minutes=self.stuck_threshold_minutes,
            rate_limited_delay=self.rate_limited_delay,
        )

    def health_thresholds(self) -> HealthThresholds:
        return HealthThresholds(
            backlog_warning=self.backlog_warning,
            failed_critical=self.failed_critical,
            stuck_threshold_minutes=self.stuck_threshold_minutes,
        )

    def transport_options(self) -> dict[str, object]:
        """Keyword arguments for :func:`async_email_queue.transport.create_transport`."""
        return {
            "api_url": self.api_url,
            "api_key": self.api_key,
            "from_address": self.from_address,
            "smtp_host": self.smtp_host,
            "smtp_port": self.smtp_port,
            "smtp_user": self.smtp_user,
            "smtp_password": self.smtp_password,
            "smtp_use_tls": self.smtp_use_tls,
            "timeout": self.transport_timeout,
        }


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    logger.warning(f"Invalid boolean value '{value}', using default {default}")
    return default


def _parse_delays(value: str | None) -> tuple[float, ...]:
    if not value:
        return ()
    return tuple(float(part) for part in value.replace(";", ",").split(",") if part.strip())


def load_settings(config_path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> QueueSettings:
    """Load settings from an INI file with environment fallbacks.

    Args:
        config_path: INI file to read. Defaults to ``EMAIL_QUEUE_CONFIG`` or
            ``config.ini``. A missing file is not an error.
        environ: Environment mapping; defaults to ``os.environ``.

    Returns:
        The resolved settings.

    Raises:
        ValueError: If a numeric value cannot be parsed.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get(f"{ENV_PREFIX}CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
    else:
        logger.debug(f"Config file {path} not found, using environment and defaults")

    def get(section: str, option: str, env_name: str) -> str | None:
        if parser.has_option(section, option):
            value = parser.get(section, option).strip()
            return value or None
        value = env.get(f"{ENV_PREFIX}{env_name}")
        return value.strip() if value and value.strip() else None

    def get_str(section: str, option: str, env_name: str, default: str | None) -> str | None:
        value = get(section, option, env_name)
        return default if value is None else value

    def get_int(section: str, option: str, env_name: str, default: int) -> int:
        value = get(section, option, env_name)
        return default if value is None else int(value)

    def get_float(section: str, option: str, env_name: str, default: float) -> float:
        value = get(section, option, env_name)
        return default if value is None else float(value)

    def get_bool(section: str, option: str, env_name: str, default: bool) -> bool:
        return _parse_bool(get(section, option, env_name), default)

    defaults = QueueSettings()
    db_path = get_str("storage", "db_path", "DB_PATH", defaults.db_path)
    return QueueSettings(
        db_path=os.path.expanduser(db_path) if db_path and "://" not in db_path else db_path,
        host=get_str("server", "host", "HOST", defaults.host),
        port=get_int("server", "port", "PORT", defaults.port),
        api_token=get_str("server", "api_token", "API_TOKEN", None),
        transport_kind=get_str("transport", "kind", "TRANSPORT", defaults.transport_kind),
        api_url=get_str("transport", "api_url", "API_URL", None),
        api_key=get_str("transport", "api_key", "API_KEY", None),
        from_address=get_str("transport", "from_address", "FROM_ADDRESS", None),
        smtp_host=get_str("transport", "smtp_host", "SMTP_HOST", None),
        smtp_port=get_int("transport", "smtp_port", "SMTP_PORT", defaults.smtp_port),
        smtp_user=get_str("transport", "smtp_user", "SMTP_USER", None),
        smtp_password=get_str("transport", "smtp_password", "SMTP_PASSWORD", None),
        smtp_use_tls=get_bool("transport", "smtp_use_tls", "SMTP_USE_TLS", defaults.smtp_use_tls),
        transport_timeout=get_float("transport", "timeout", "TRANSPORT_TIMEOUT", defaults.transport_timeout),
        batch_size=get_int("dispatch", "batch_size", "BATCH_SIZE", defaults.batch_size),
        min_send_interval=get_float("dispatch", "min_send_interval", "MIN_SEND_INTERVAL", defaults.min_send_interval),
        dispatch_interval=get_float("dispatch", "dispatch_interval", "DISPATCH_INTERVAL", defaults.dispatch_interval),
        scheduler_active=get_bool("dispatch", "scheduler_active", "SCHEDULER_ACTIVE", defaults.scheduler_active),
        test_mode=get_bool("dispatch", "test_mode", "TEST_MODE", defaults.test_mode),
        max_retries=get_int("retry", "max_retries", "MAX_RETRIES", defaults.max_retries),
        stuck_threshold_minutes=get_float(
            "retry", "stuck_threshold_minutes", "STUCK_THRESHOLD_MINUTES", defaults.stuck_threshold_minutes
        ),
        backoff_seconds=_parse_delays(get("retry", "backoff_seconds", "BACKOFF_SECONDS")) or defaults.backoff_seconds,
        rate_limited_delay=get_float("retry", "rate_limited_delay", "RATE_LIMITED_DELAY", defaults.rate_limited_delay),
        backlog_warning=get_int("health", "backlog_warning", "BACKLOG_WARNING", defaults.backlog_warning),
        failed_critical=get_int("health", "failed_critical", "FAILED_CRITICAL", defaults.failed_critical),
        health_check_interval=get_float(
            "health", "check_interval", "HEALTH_CHECK_INTERVAL", defaults.health_check_interval
        ),
        log_level=(get_str("logging", "level", "LOG_LEVEL", defaults.log_level) or "INFO").upper(),
        log_delivery_activity=get_bool(
            "logging", "delivery_activity", "LOG_DELIVERY_ACTIVITY", defaults.log_delivery_activity
        ),
    )
