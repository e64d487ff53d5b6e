"""Logging configuration helpers for Exam Pilot."""

from __future__ import annotations

import logging
from logging import Logger
import os

_LOG_LEVEL_ENV = "EXAM_PILOT_LOG_LEVEL"


def configure_logging(level: str | None = None) -> Logger:
    """Configure basic logging for the application and return the package logger.

    ``level`` falls back to ``EXAM_PILOT_LOG_LEVEL`` and then to INFO.
    """
    name = (level or os.environ.get(_LOG_LEVEL_ENV) or "INFO").upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        resolved = logging.INFO
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    return logging.getLogger("exam_pilot")
