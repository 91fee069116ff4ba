"""
logging_utils.py - One place to set up log handlers.

Library modules only ever do `logger = logging.getLogger(__name__)`. Handlers
are installed by the entry points (scripts, the host service) through
configure_logging(), which is safe to call more than once.
"""

from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

LOG_LEVEL_ENV_VAR = "HYBRID_INTENT_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_ROOT_LOGGER_NAME = "hybrid_intent"


def _resolve_level(level: Union[int, str, None]) -> int:
    if level is None:
        level = os.getenv(LOG_LEVEL_ENV_VAR, "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    # getLevelName returns "Level X" for unknown names
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    level: Union[int, str, None] = None,
    log_file: Optional[str] = None,
) -> logging.Logger:
    """
    Attach handlers to the package logger.

    Args:
        level: logging level or level name; defaults to $HYBRID_INTENT_LOG_LEVEL
               (INFO when unset)
        log_file: optional path for a rotating file handler (5 MB x 3)

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger(_ROOT_LOGGER_NAME)
    logger.setLevel(_resolve_level(level))

    if getattr(logger, "_hybrid_intent_configured", False):
        return logger

    formatter = logging.Formatter(LOG_FORMAT)

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=5 * 1024 * 1024, backupCount=3, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    logger.propagate = False
    logger._hybrid_intent_configured = True  # type: ignore[attr-defined]
    return logger
