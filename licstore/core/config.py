"""
Configuration helpers for the licstore backend.

Settings are read from environment variables once and cached so that
repositories/services do not fetch os.environ directly.
"""

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
import os

BACKEND_FILE = "file"
BACKEND_SQL = "sql"


@dataclass(frozen=True)
class Settings:
    """Typed view of environment variables."""

    app_env: str
    backend: str
    data_dir: Path
    database_url: str
    log_level: str


@lru_cache
def get_settings() -> Settings:
    """Read the current environment and build a Settings instance."""
    def _backend(value: str | None) -> str:
        candidate = (value or BACKEND_FILE).strip().lower()
        if candidate not in {BACKEND_FILE, BACKEND_SQL}:
            return BACKEND_FILE
        return candidate

    return Settings(
        app_env=(os.getenv("APP_ENV") or "dev").lower(),
        backend=_backend(os.getenv("STORE_BACKEND")),
        data_dir=Path(os.getenv("DATA_DIR") or "data").expanduser(),
        database_url=(os.getenv("DATABASE_URL") or "").strip(),
        log_level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    )
