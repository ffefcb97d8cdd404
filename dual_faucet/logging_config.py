"""
Logging setup

Console sink at the configured level plus an optional rotating file sink.
"""

import sys
from pathlib import Path

from loguru import logger

from .faucet_config import LoggingSettings


CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}"


def configure_logging(settings: LoggingSettings, verbose: bool = False):
    """
    Replace loguru's default sink with the configured ones

    Args:
        settings: Logging settings
        verbose: Force DEBUG on the console
    """
    level = "DEBUG" if verbose else settings.level

    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT)

    if settings.file:
        Path(settings.file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            settings.file,
            level=settings.level,
            format=FILE_FORMAT,
            rotation=settings.rotation,
            retention=settings.retention,
            encoding="utf-8"
        )
        logger.debug(f"Logging to {settings.file} (rotation {settings.rotation}, keep {settings.retention})")
