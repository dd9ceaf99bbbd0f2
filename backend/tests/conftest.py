"""Shared fixtures: the repository metadata and an in-memory database fake."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from tross.auth.permissions import PermissionEvaluator, load_permission_matrix
from tross.auth.types import PermissionContext
from tross.core.config import DEFAULT_METADATA_PATH
from tross.metadata.loader import EntityMetadataRegistry
from tross.persistence.client import QueryResult


class FakeDatabase:
    """DatabaseClient double that records statements and replays canned results.

    ``on(fragment, ...)`` registers a response for any statement containing
    *fragment*; the first matching registration wins. Unmatched statements
    return an empty result. ``query`` is an AsyncMock so tests can use the
    usual ``assert_awaited`` helpers.
    """

    def __init__(self):
        self._responses: list[tuple[str, object]] = []
        self.calls: list[tuple[str, list]] = []
        self.committed = 0
        self.rolled_back = 0
        self.query = AsyncMock(side_effect=self._respond)

    def on(self, fragment: str, rows=None, rowcount=None, error=None, respond=None) -> None:
        if error is not None:
            response = error
        elif respond is not None:
            response = respond
        else:
            rows = rows or []
            response = QueryResult(rows=rows, rowcount=len(rows) if rowcount is None else rowcount)
        self._responses.append((fragment, response))

    async def _respond(self, text, params=None):
        self.calls.append((text, list(params or [])))
        for fragment, response in self._responses:
            if fragment in text:
                if isinstance(response, BaseException):
                    raise response
                if callable(response):
                    return response(text, params)
                return response
        return QueryResult()

    async def with_transaction(self, fn):
        try:
            result = await fn(self)
        except BaseException:
            self.rolled_back += 1
            raise
        self.committed += 1
        return result

    def statements(self, prefix: str = "") -> list[str]:
        return [sql for sql, _ in self.calls if sql.startswith(prefix)]


@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture(scope="session")
def registry():
    return EntityMetadataRegistry.load(DEFAULT_METADATA_PATH)


@pytest.fixture(scope="session")
def matrix():
    return load_permission_matrix(DEFAULT_METADATA_PATH / "permissions.yaml")


@pytest.fixture
def evaluator(matrix):
    return PermissionEvaluator(matrix)


@pytest.fixture
def admin_ctx():
    return PermissionContext(user_id=1, role="admin")


@pytest.fixture
def customer_ctx():
    return PermissionContext(user_id=42, role="customer")


@pytest.fixture
def technician_ctx():
    return PermissionContext(user_id=7, role="technician")
