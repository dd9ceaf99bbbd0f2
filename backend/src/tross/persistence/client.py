"""Query-executing client protocol used by the entity layer."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar, runtime_checkable

T = TypeVar("T")


@dataclass
class QueryResult:
    """Rows returned by a statement plus the driver's affected-row count."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    rowcount: int = 0

    @property
    def first(self) -> dict[str, Any] | None:
        return self.rows[0] if self.rows else None


@runtime_checkable
class DatabaseClient(Protocol):
    """Interface the entity layer needs from the database.

    ``with_transaction`` runs *fn* with a client bound to a single
    connection inside one transaction: committed when *fn* returns,
    rolled back when it raises.
    """

    async def query(self, text: str, params: list[Any] | None = None) -> QueryResult: ...

    async def with_transaction(
        self, fn: Callable[[DatabaseClient], Awaitable[T]]
    ) -> T: ...
