"""
Logging configuration using loguru.

Hosts call setup_logging() (or configure_logging(config)) once at startup;
library code just does ``from loguru import logger``.
"""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING

from loguru import logger

if TYPE_CHECKING:
    from workfleet.core.config import Config


def setup_logging(
    level: str = "INFO",
    log_file: str | None = None,
    fmt: str = "<green>{time:HH:mm:ss}</green> <level>[{level.name}]</level> {message}",
    rotation: str = "10 MB",
    retention: str = "7 days",
) -> None:
    """
    Configure loguru with console and optional file output.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR).
        log_file: Path to log file. If None, only logs to stderr.
        fmt: Loguru format string for the console sink.
        rotation: Log file rotation size.
        retention: How long to keep rotated logs.
    """
    logger.remove()
    logger.add(sys.stderr, level=level, format=fmt)

    if log_file:
        logger.add(
            log_file,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function} | {message}",
            rotation=rotation,
            retention=retention,
        )


def configure_logging(config: Config) -> None:
    """Apply the ``logging`` section of *config*."""
    settings = config.validated().logging
    setup_logging(
        level=settings.level,
        log_file=settings.file,
        rotation=settings.rotation,
        retention=settings.retention,
    )
