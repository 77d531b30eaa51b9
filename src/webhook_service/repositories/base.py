"""Shared asyncpg helpers for repositories."""
from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterable

import asyncpg  # type: ignore[import-untyped]

from webhook_service.core.exceptions import StoreError


class BaseRepository:
    """Thin wrapper over asyncpg pool operations."""

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a pooled connection; driver errors surface as :class:`StoreError`."""
        try:
            async with self._pool.acquire() as conn:
                yield conn
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise StoreError(
                "Database operation failed", details={"error": type(exc).__name__}
            ) from exc

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with self._connection() as conn:
            return await conn.fetchrow(query, *args)

    async def _fetch(self, query: str, *args: Any) -> Iterable[asyncpg.Record]:
        async with self._connection() as conn:
            return await conn.fetch(query, *args)

    async def _execute(self, query: str, *args: Any) -> str:
        async with self._connection() as conn:
            return await conn.execute(query, *args)

    @staticmethod
    def _decode_json_columns(payload: dict[str, Any], *columns: str) -> dict[str, Any]:
        for column in columns:
            value = payload.get(column)
            if isinstance(value, str):
                payload[column] = json.loads(value)
        return payload

    @staticmethod
    def _affected_rows(status: str) -> int:
        # asyncpg returns command tags such as "DELETE 3" / "UPDATE 1"
        return int(status.split()[-1])
