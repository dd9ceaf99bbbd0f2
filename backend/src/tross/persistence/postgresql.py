"""PostgreSQL database client.

Uses psycopg v3 with psycopg_pool's AsyncConnectionPool:
  - %s placeholders, values always passed separately from the SQL text
  - dict_row cursor factory for dict-based row access
  - one pooled connection per query() call, and one per transaction
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from tross.persistence.client import DatabaseClient, QueryResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectionClient:
    """DatabaseClient bound to one open connection.

    Handed to ``with_transaction`` callbacks so every statement of the
    unit of work runs on the same connection.
    """

    def __init__(self, conn: Any):
        self.conn = conn

    async def query(self, text: str, params: list[Any] | None = None) -> QueryResult:
        cursor = await self.conn.execute(text, params or [])
        rows: list[dict[str, Any]] = []
        if cursor.description is not None:
            rows = [dict(row) for row in await cursor.fetchall()]
        return QueryResult(rows=rows, rowcount=cursor.rowcount)

    async def with_transaction(self, fn: Callable[[DatabaseClient], Awaitable[T]]) -> T:
        # Nested use becomes a savepoint
        async with self.conn.transaction():
            return await fn(self)


class PostgreSQLClient:
    """Pooled PostgreSQL client using psycopg v3."""

    def __init__(self, url: str, min_size: int = 1, max_size: int = 10):
        # psycopg wants a plain libpq URL; strip a SQLAlchemy-style driver suffix
        self.url = url.replace("postgresql+psycopg://", "postgresql://")
        self.min_size = min_size
        self.max_size = max_size
        self.pool: Any = None

    async def open(self) -> None:
        """Open the connection pool."""
        from psycopg.rows import dict_row
        from psycopg_pool import AsyncConnectionPool

        self.pool = AsyncConnectionPool(
            self.url,
            min_size=self.min_size,
            max_size=self.max_size,
            kwargs={"row_factory": dict_row},
            open=False,
        )
        await self.pool.open()
        logger.info("PostgreSQL pool opened (min=%d, max=%d)", self.min_size, self.max_size)

    async def close(self) -> None:
        """Close the connection pool."""
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    def _require_pool(self) -> Any:
        if self.pool is None:
            raise RuntimeError("Database not connected")
        return self.pool

    async def query(self, text: str, params: list[Any] | None = None) -> QueryResult:
        async with self._require_pool().connection() as conn:
            return await ConnectionClient(conn).query(text, params)

    async def with_transaction(self, fn: Callable[[DatabaseClient], Awaitable[T]]) -> T:
        async with self._require_pool().connection() as conn:
            async with conn.transaction():
                return await fn(ConnectionClient(conn))
