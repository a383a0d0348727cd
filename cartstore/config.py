"""
Central configuration loader.
Reads from environment variables (via .env); every key has a default.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


# ---------------------------------------------------------------------------
# Load .env from repo root (if present)
# ---------------------------------------------------------------------------
_REPO_ROOT = Path(__file__).resolve().parents[1]
load_dotenv(_REPO_ROOT / ".env")


def _get(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    val = os.getenv(key, default)
    if required and not val:
        raise EnvironmentError(f"Missing required environment variable: {key}")
    return val


def _flag(key: str, default: str) -> bool:
    return _get(key, default=default).lower() in ("1", "true", "yes")  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class DatabaseConfig:
    path: Path
    wal: bool


def get_db_config() -> DatabaseConfig:
    raw = _get("CARTSTORE_DB_PATH")
    return DatabaseConfig(
        path=Path(raw) if raw else _REPO_ROOT / "data" / "cartstore.db",
        wal=_flag("CARTSTORE_WAL", "true"),
    )


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
def get_log_level() -> str:
    return _get("CARTSTORE_LOG_LEVEL", default="INFO").upper()  # type: ignore[union-attr]


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
def get_repo_root() -> Path:
    return _REPO_ROOT


def get_db_path() -> Path:
    return get_db_config().path
