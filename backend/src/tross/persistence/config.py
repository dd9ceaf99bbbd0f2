"""Database configuration and client factory."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tross.persistence.postgresql import PostgreSQLClient


@dataclass
class DatabaseConfig:
    """Database connection configuration.

    Supports postgresql:// (and postgresql+psycopg://) URLs.
    """

    url: str
    pool_min: int = 1
    pool_max: int = 10

    @classmethod
    def from_env(cls) -> DatabaseConfig:
        """Create config from environment variables.

        Reads DATABASE_URL (required) and the optional pool bounds
        TROSS_DB_POOL_MIN / TROSS_DB_POOL_MAX.

        Raises:
            ValueError: If DATABASE_URL is unset or a pool bound is not an integer
        """
        url = os.environ.get("DATABASE_URL")
        if not url:
            raise ValueError("DATABASE_URL is not set")

        try:
            pool_min = int(os.environ.get("TROSS_DB_POOL_MIN", "1"))
            pool_max = int(os.environ.get("TROSS_DB_POOL_MAX", "10"))
        except ValueError:
            raise ValueError("TROSS_DB_POOL_MIN and TROSS_DB_POOL_MAX must be integers") from None

        if pool_min < 0 or pool_max < max(pool_min, 1):
            raise ValueError(f"Invalid pool bounds: min={pool_min}, max={pool_max}")
        return cls(url=url, pool_min=pool_min, pool_max=pool_max)

    @property
    def is_postgresql(self) -> bool:
        return self.url.startswith("postgresql")


def create_client(config: DatabaseConfig) -> PostgreSQLClient:
    """Create a database client for the configured URL (not yet opened).

    Raises:
        ValueError: For unsupported URL schemes.
    """
    if config.is_postgresql:
        from tross.persistence.postgresql import PostgreSQLClient

        return PostgreSQLClient(config.url, min_size=config.pool_min, max_size=config.pool_max)

    raise ValueError(f"Unsupported database URL scheme: {config.url}")
