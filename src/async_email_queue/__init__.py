# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Durable transactional email queue for multi-tenant school programs.

This package implements the email delivery pipeline of a school program
management application:

- A durable job queue with an explicit status state machine
- Rate-limited batch dispatch with a single global send permit
- Stuck-job detection and reclaim governed by a retry policy
- Per-school health snapshots persisted as a time series
- Prometheus metrics for monitoring
- FastAPI REST API and click CLI for operators

Example:
    Basic usage with the FastAPI application::

        from async_email_queue.core import EmailQueueCore
        from async_email_queue.api import create_app

        core = EmailQueueCore(db_path="/data/email_queue.db")
        app = create_app(core, api_token="secret")
"""
