# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Base adapter class for async database backends."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Sequence


class DbAdapter(ABC):
    """Abstract base class for async database adapters.

    All queries use :name placeholders. Every call runs in its own
    transaction and commits before returning, so a single statement is the
    unit of atomicity the queue relies on.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Acquire backend resources (pool, file handle)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def execute(self, query: str, params: dict[str, Any] | None = None) -> int:
        """Execute a statement and return the affected row count."""
        ...

    @abstractmethod
    async def execute_many(self, query: str, params_list: Sequence[dict[str, Any]]) -> int:
        """Execute a statement once per parameter set inside one transaction.

        Either every row is written or, on error, none is.
        """
        ...

    @abstractmethod
    async def fetch_one(
        self, query: str, params: dict[str, Any] | None = None
    ) -> dict[str, Any] | None:
        """Execute a query and return the first row as a dict, or None."""
        ...

    @abstractmethod
    async def fetch_all(
        self, query: str, params: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        """Execute a query and return all rows as dicts."""
        ...

    @abstractmethod
    async def execute_script(self, script: str) -> None:
        """Execute several statements (schema creation)."""
        ...
