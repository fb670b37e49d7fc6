# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module provides a pre-configured FastAPI application that reads
settings through :func:`async_email_queue.config_loader.load_settings` and
starts the EmailQueueCore with the application.

Usage:
    uvicorn async_email_queue.server:app --host 0.0.0.0 --port 8000

Environment variables:
    EMAIL_QUEUE_CONFIG: Path to the INI file (default: config.ini)
    EMAIL_QUEUE_DB_PATH: Queue database (default: /data/email_queue.db)
    EMAIL_QUEUE_API_TOKEN: Token required in the X-API-Token header
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config_loader import QueueSettings, load_settings
from .core import EmailQueueCore
from .logger import configure_logging


def build_app(settings: QueueSettings) -> FastAPI:
    """Create an application whose lifespan starts and stops a fresh core."""
    core = EmailQueueCore.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the core service."""
        await core.start()
        yield
        await core.stop()

    return create_app(core, api_token=settings.api_token, lifespan=lifespan)


_settings = load_settings()
configure_logging(_settings.log_level)

# Create the configured application
app = build_app(_settings)


def main(host: str | None = None, port: int | None = None, reload: bool = False) -> None:
    """Serve :data:`app` with uvicorn."""
    import uvicorn

    uvicorn.run(
        "async_email_queue.server:app",
        host=host or _settings.host,
        port=port or _settings.port,
        reload=reload,
        log_level=_settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
