"""
Logging setup for the UI entry point. Library modules only call
logging.getLogger(__name__); handlers are attached once, here.
"""

from __future__ import annotations
import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_LOGGING_CONFIGURED = False


def setup_logging(level: str | int = "INFO") -> logging.Logger:
    """Attach a stderr handler to the package logger (idempotent)."""
    global _LOGGING_CONFIGURED
    logger = logging.getLogger("chatcore")
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    if _LOGGING_CONFIGURED:
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    _LOGGING_CONFIGURED = True
    return logger
