"""Configure loguru sinks for the CLI and the HTTP server."""

from __future__ import annotations

import sys

from loguru import logger

_VALID_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


def normalize_level(level: str | None, default: str = "INFO") -> str:
    """Return an upper-cased loguru level name, or *default* if unknown."""
    if not level:
        return default
    candidate = str(level).strip().upper()
    return candidate if candidate in _VALID_LEVELS else default


def configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=normalize_level(level),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )
