# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite backend on aiosqlite."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import aiosqlite

from .base import DbAdapter

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence


class SqliteAdapter(DbAdapter):
    """Queue storage in a single SQLite file, one connection per call.

    SQLite serialises writers on the database file, so a conditional
    ``UPDATE ... WHERE status = :expected`` issued by two dispatchers at once
    matches for exactly one of them.
    """

    def __init__(self, db_path: str, *, timeout: float = 30.0):
        """Initialize SQLite adapter.

        Args:
            db_path: Path to SQLite file. ":memory:" is accepted but, since a
                new connection is opened per operation, every call then sees
                an empty database; use a file for anything beyond smoke tests.
            timeout: Seconds to wait on a locked database before failing.
        """
        self.db_path = db_path or ":memory:"
        self.timeout = timeout

    async def connect(self) -> None:
        """Nothing to open ahead of time."""

    async def close(self) -> None:
        """Nothing is held between calls."""

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[aiosqlite.Connection]:
        async with aiosqlite.connect(self.db_path, timeout=self.timeout) as db:
            db.row_factory = aiosqlite.Row
            yield db

    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        async with self._session() as db:
            cursor = await db.execute(query, params or {})
            await db.commit()
            return cursor.rowcount

    async def execute_many(self, query: str, params_list: Sequence[dict[str, Any]]) -> int:
        if not params_list:
            return 0
        async with self._session() as db:
            try:
                cursor = await db.executemany(query, list(params_list))
            except Exception:
                await db.rollback()
                raise
            await db.commit()
            return cursor.rowcount

    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        async with self._session() as db:
            async with db.execute(query, params or {}) as cursor:
                row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        async with self._session() as db:
            async with db.execute(query, params or {}) as cursor:
                rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def execute_script(self, script: str) -> None:
        async with self._session() as db:
            await db.executescript(script)
            await db.commit()
