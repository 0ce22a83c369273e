"""
Logging configuration for NetLens.

Console output goes through rich so log lines do not tear the live probe
output; an optional rotating file handler keeps a detailed trail.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


LOGGER_NAME = "netlens"


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    max_bytes: int = 10485760,  # 10MB
    backup_count: int = 5,
    enable_console: bool = True,
) -> logging.Logger:
    """
    Set up logging for NetLens.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path; enables the rotating file handler
        max_bytes: Maximum log file size before rotation
        backup_count: Number of backup log files to keep
        enable_console: Log to stderr through rich

    Returns:
        The configured ``netlens`` logger
    """
    numeric_level = getattr(logging, level.upper(), logging.WARNING)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if log_file else numeric_level)
    logger.handlers.clear()

    if enable_console:
        console_handler = RichHandler(
            console=Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            fmt='%(asctime)s | %(levelname)-8s | %(name)-24s | %(threadName)-18s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def configure_logging(debug: bool = False, log_file: Optional[str] = None,
                      level: str = "WARNING") -> logging.Logger:
    """Quick setup used by the CLI. --debug overrides the configured level."""
    return setup_logging(level="DEBUG" if debug else level, log_file=log_file)
