"""Logging configuration for meal_volume entry points.

Usage:
    from meal_volume.logging_config import setup_logging

    # stderr only:
    setup_logging()

    # stderr + rotating log file, debug level:
    setup_logging(log_file="logs/estimate.log", debug=True)
"""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

DEFAULT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Log rotation defaults
MAX_BYTES = 5 * 1024 * 1024  # 5 MB
BACKUP_COUNT = 3


def setup_logging(
    level: int = logging.INFO,
    log_file: str | Path | None = None,
    fmt: str = DEFAULT_FORMAT,
    max_bytes: int = MAX_BYTES,
    backup_count: int = BACKUP_COUNT,
    *,
    debug: bool = False,
) -> None:
    """Configure the root logger with a stderr handler and optional file.

    Call this once at the start of each entry point (script, tool).
    """
    if debug:
        level = logging.DEBUG

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_file,
                maxBytes=max_bytes,
                backupCount=backup_count,
            )
        )
    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)

    if log_file:
        logging.getLogger(__name__).info("logging to %s", log_file)
