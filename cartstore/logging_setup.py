"""Process-wide logging configuration."""

from __future__ import annotations

import logging
from typing import Optional

from cartstore.config import get_log_level

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    """Install the default handler on the root logger.

    ``level`` falls back to ``CARTSTORE_LOG_LEVEL``; unknown names mean INFO.
    """
    name = (level or get_log_level()).upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format=LOG_FORMAT,
    )
