"""Logging configuration for ClipKeep."""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from clipkeep.core import config


def setup_logging(level: str = config.log_level, log_file: Optional[str] = config.log_file):
    """Configure loguru logger with console and (optional) file handlers."""

    # Remove default handler
    logger.remove()

    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            path,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            level=level,
            rotation="5 MB",
            retention=5,
            enqueue=True,
        )

    return logger
