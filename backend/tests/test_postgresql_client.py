"""Tests for the psycopg-backed database client with mocked connections."""

from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from tross.persistence.client import DatabaseClient, QueryResult
from tross.persistence.postgresql import ConnectionClient, PostgreSQLClient


def make_conn(rows=None, rowcount=0, description=("col",)):
    cursor = MagicMock()
    cursor.description = description
    cursor.rowcount = rowcount
    cursor.fetchall = AsyncMock(return_value=rows or [])

    conn = MagicMock()
    conn.execute = AsyncMock(return_value=cursor)
    conn.transaction = MagicMock(side_effect=lambda: _noop_context())
    return conn


@asynccontextmanager
async def _noop_context():
    yield


def make_pool(conn):
    pool = MagicMock()

    @asynccontextmanager
    async def connection():
        yield conn

    pool.connection = connection
    return pool


class TestConnectionClient:
    @pytest.mark.asyncio
    async def test_query_returns_rows(self):
        conn = make_conn(rows=[{"id": 1}, {"id": 2}], rowcount=2)
        result = await ConnectionClient(conn).query('SELECT * FROM "roles" WHERE "id" > %s', [0])

        assert result == QueryResult(rows=[{"id": 1}, {"id": 2}], rowcount=2)
        conn.execute.assert_awaited_once_with('SELECT * FROM "roles" WHERE "id" > %s', [0])

    @pytest.mark.asyncio
    async def test_statement_without_result_set(self):
        conn = make_conn(rowcount=7, description=None)
        result = await ConnectionClient(conn).query('DELETE FROM "audit_logs"')

        assert result.rows == []
        assert result.rowcount == 7
        conn.execute.assert_awaited_once_with('DELETE FROM "audit_logs"', [])

    @pytest.mark.asyncio
    async def test_nested_transaction(self):
        conn = make_conn()
        client = ConnectionClient(conn)

        async def work(tx):
            assert tx is client
            return "done"

        assert await client.with_transaction(work) == "done"
        conn.transaction.assert_called_once()


class TestPostgreSQLClient:
    def test_is_a_database_client(self):
        assert isinstance(PostgreSQLClient("postgresql://localhost/tross"), DatabaseClient)

    @pytest.mark.asyncio
    async def test_query_requires_open_pool(self):
        client = PostgreSQLClient("postgresql://localhost/tross")
        with pytest.raises(RuntimeError, match="Database not connected"):
            await client.query("SELECT 1")

    @pytest.mark.asyncio
    async def test_query_uses_pooled_connection(self):
        conn = make_conn(rows=[{"total": 3}], rowcount=1)
        client = PostgreSQLClient("postgresql://localhost/tross")
        client.pool = make_pool(conn)

        result = await client.query("SELECT COUNT(*) AS total FROM \"roles\"")

        assert result.first == {"total": 3}

    @pytest.mark.asyncio
    async def test_transaction_binds_one_connection(self):
        conn = make_conn(rows=[{"id": 1}], rowcount=1)
        client = PostgreSQLClient("postgresql://localhost/tross")
        client.pool = make_pool(conn)

        async def work(tx):
            assert isinstance(tx, ConnectionClient)
            assert tx.conn is conn
            first = await tx.query("SELECT 1")
            second = await tx.query("SELECT 2")
            return first.rowcount + second.rowcount

        assert await client.with_transaction(work) == 2
        conn.transaction.assert_called_once()
        assert conn.execute.await_count == 2

    @pytest.mark.asyncio
    async def test_transaction_error_propagates(self):
        conn = make_conn()
        client = PostgreSQLClient("postgresql://localhost/tross")
        client.pool = make_pool(conn)

        async def work(tx):
            raise ValueError("rollback me")

        with pytest.raises(ValueError, match="rollback me"):
            await client.with_transaction(work)

    @pytest.mark.asyncio
    async def test_close_without_pool(self):
        client = PostgreSQLClient("postgresql://localhost/tross")
        await client.close()
        assert client.pool is None
