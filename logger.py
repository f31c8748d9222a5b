"""Process-wide logging setup."""

from __future__ import annotations

import logging
import sys
from typing import Optional

_LOGGER_INITIALIZED = False


def configure_logging(level: Optional[str] = None) -> None:
    """Configure the root logger once per process."""
    global _LOGGER_INITIALIZED
    if _LOGGER_INITIALIZED:
        return

    if level is None:
        from config import get_settings

        try:
            level = get_settings().log_level
        except RuntimeError:
            level = "INFO"

    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        stream=sys.stdout,
    )
    _LOGGER_INITIALIZED = True


def get_logger(name: str) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name)
