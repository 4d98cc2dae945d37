"""Structured logging bridge for relay state transitions."""

from __future__ import annotations

import logging

from relaybridge.util.logger import logger


def log_event(event: str, *, level: int = logging.INFO, **payload: object) -> None:
    """Log one pipeline transition as ``event=<name> k=v ...``."""

    fields = " ".join(f"{key}={value}" for key, value in payload.items())
    logger.log(level, "event=%s %s", event, fields)
