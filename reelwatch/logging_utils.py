"""Structured logging helper shared by every service module."""

from __future__ import annotations

import logging
from typing import Any


def structured_log(
    logger: logging.Logger,
    level: str,
    event: str,
    /,
    **fields: Any,
) -> None:
    """Emit a structured log entry.

    The event name becomes the log message; JsonLogFormatter reads it back
    through record.getMessage(), so it is not repeated in ``extra``.

    Usage:
        structured_log(logger, "info", "harvest.page_completed", page=2, record_count=12)
    """
    log_method = getattr(logger, level.lower())
    log_method(event, extra=fields)
