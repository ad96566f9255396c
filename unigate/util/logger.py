"""Project-wide ``unigate`` logger (stderr only)."""

from __future__ import annotations

import logging


LOGGER_NAME = "unigate"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


def _normalize_level(raw: str) -> int:
    name = str(raw or "INFO").strip().upper()
    name = _LEVEL_ALIASES.get(name, name)
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _build_logger() -> logging.Logger:
    unigate_logger = logging.getLogger(LOGGER_NAME)
    if unigate_logger.handlers:
        return unigate_logger

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    unigate_logger.addHandler(handler)
    unigate_logger.setLevel(logging.INFO)
    unigate_logger.propagate = False
    return unigate_logger


logger = _build_logger()


def set_log_level(level: str) -> None:
    """Apply the configured level; unknown names fall back to INFO."""

    logger.setLevel(_normalize_level(level))
