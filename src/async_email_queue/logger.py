# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Logging helpers for the email queue.

Handlers, levels and formats are configured once by the entry points
(``server.py`` and ``cli.py``) through :func:`configure_logging`; library
modules only ask for named loggers.

Example:
    Typical usage in a module::

        from async_email_queue.logger import get_logger

        logger = get_logger("Dispatcher")
        logger.info("Batch completed")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "EmailQueue") -> logging.Logger:
    """Retrieve a logger instance.

    Args:
        name: The logger name. Defaults to "EmailQueue".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str | None = "INFO") -> None:
    """Configure the root logger for an entry point.

    Unknown level names fall back to INFO. Reconfiguration is forced so that
    repeated calls (e.g. uvicorn reloads) do not stack handlers.

    Args:
        level: Level name such as ``"DEBUG"`` or ``"warning"``.
    """
    resolved = getattr(logging, str(level or "INFO").upper(), logging.INFO)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logging.basicConfig(
        level=resolved,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
