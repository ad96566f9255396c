"""Structured event lines on the ``unigate`` logger."""

from __future__ import annotations

from typing import Any

from unigate.util.logger import logger


def log_event(event: str, **fields: Any) -> None:
    rendered = " ".join(f"{key}={value}" for key, value in fields.items() if value is not None)
    logger.info("event=%s %s", event, rendered)
