from __future__ import annotations

import logging
import os
import sys
from typing import Optional

from prioritization_platform.core.errors import ConfigError


LOGGER_NAME = "prioritization_platform"
LOG_LEVEL_ENV = "PRIORITIZATION_LOG_LEVEL"
DEFAULT_LEVEL = "WARNING"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def resolve_level(level: Optional[str] = None) -> str:
    """Explicit level, then PRIORITIZATION_LOG_LEVEL, then WARNING."""
    raw = (level or os.getenv(LOG_LEVEL_ENV, "") or DEFAULT_LEVEL).strip().upper()
    if not isinstance(logging.getLevelName(raw), int):
        raise ConfigError(
            code="E_CONFIG_INVALID",
            message=f"unknown log level: {raw} (choose one of: DEBUG, INFO, WARNING, ERROR, CRITICAL)",
            path="log_level",
        )
    return raw


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach one stderr handler to the package logger; later calls only change the level.

    stdout is left to command output (JSON payloads must stay parseable).
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(resolve_level(level))

    if not any(getattr(h, "_prioritization", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._prioritization = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
        logger.propagate = False

    return logger
