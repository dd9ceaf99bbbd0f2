"""Runtime settings for the entity layer."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

# <repo>/metadata, resolved from backend/src/tross/core/config.py
DEFAULT_METADATA_PATH = Path(__file__).resolve().parents[4] / "metadata"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass
class Settings:
    """Entity layer settings.

    Attributes:
        metadata_path: Directory holding entities/*.yaml and permissions.yaml
        max_page_size: Upper bound applied to every requested page size
        default_page_size: Page size used when the caller gives none
        log_level: Root log level name used by the CLI
    """

    metadata_path: Path = DEFAULT_METADATA_PATH
    max_page_size: int = 200
    default_page_size: int = 50
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> Settings:
        """Create settings from environment variables.

        Reads TROSS_METADATA_PATH, TROSS_MAX_PAGE_SIZE,
        TROSS_DEFAULT_PAGE_SIZE and TROSS_LOG_LEVEL.
        """
        metadata_path = os.environ.get("TROSS_METADATA_PATH")
        settings = cls(
            metadata_path=Path(metadata_path) if metadata_path else DEFAULT_METADATA_PATH,
            max_page_size=_env_int("TROSS_MAX_PAGE_SIZE", 200),
            default_page_size=_env_int("TROSS_DEFAULT_PAGE_SIZE", 50),
            log_level=os.environ.get("TROSS_LOG_LEVEL", "INFO").upper(),
        )
        if settings.max_page_size < 1:
            raise ValueError("TROSS_MAX_PAGE_SIZE must be at least 1")
        if settings.default_page_size < 1:
            raise ValueError("TROSS_DEFAULT_PAGE_SIZE must be at least 1")
        return settings

    @property
    def entities_path(self) -> Path:
        return self.metadata_path / "entities"

    @property
    def permissions_path(self) -> Path:
        return self.metadata_path / "permissions.yaml"
