"""PostgreSQL-backed audit sink writing to the ``audit_logs`` table."""

from __future__ import annotations

import json
from typing import Any

from tross.persistence.client import DatabaseClient

_COLUMNS = (
    "user_id",
    "action",
    "resource_type",
    "resource_id",
    "old_values",
    "new_values",
    "ip_address",
    "user_agent",
    "result",
    "error_message",
)


def _json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str)


class PostgresAuditSink:
    """Inserts audit records using its own client, outside any caller transaction."""

    def __init__(self, client: DatabaseClient):
        self.client = client

    async def log(self, record: dict[str, Any]) -> None:
        values = [
            record.get("user_id"),
            record["action"],
            record["resource_type"],
            record.get("resource_id"),
            _json(record.get("old_values")),
            _json(record.get("new_values")),
            record.get("ip_address"),
            record.get("user_agent"),
            record.get("result", "success"),
            record.get("error_message"),
        ]
        columns = ", ".join(f'"{c}"' for c in _COLUMNS)
        placeholders = ", ".join(["%s"] * len(_COLUMNS))
        await self.client.query(
            f'INSERT INTO "audit_logs" ({columns}) VALUES ({placeholders})',
            values,
        )
