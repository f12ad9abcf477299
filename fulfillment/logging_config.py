"""
Centralized logging configuration for the fulfillment service.
Ensures consistent logging format and level across all modules.
"""

from __future__ import annotations

import logging
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOGGER_NAME = "fulfillment"


def configure_logging(
    level: Union[int, str] = logging.INFO,
    log_dir: Optional[Path] = None,
) -> logging.Logger:
    """Configure the package logger with console and optional file output.

    Parameters
    ----------
    level : int | str
        Logging level, e.g. ``logging.INFO`` or ``"DEBUG"``.
    log_dir : Path, optional
        Directory for a rotating log file (5 MB x 5 backups). Created if
        missing. No file is written when None.

    Returns
    -------
    logging.Logger
        The configured ``fulfillment`` logger.
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level}")

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    # Repeated calls (CLI then serve, tests) must not stack handlers
    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_dir is not None:
        log_dir = Path(log_dir)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"{LOGGER_NAME}_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
        file_handler = RotatingFileHandler(log_file, maxBytes=5 * 1024 * 1024, backupCount=5)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    return logger
