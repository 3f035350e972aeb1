"""
loguru sink setup.

The library itself only calls 'logger'; applications that want the toolkit's
output at a specific level call 'configure_logging' once at startup.
"""

import sys

from loguru import logger

from chat_toolkit.config.settings import get_settings


def configure_logging(level: str | None = None) -> int:
    """Replace loguru's default sink with a single stderr sink and return its handler id."""
    logger.remove()
    return logger.add(
        sys.stderr,
        level=level or get_settings().log_level,
        format="<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> - {message}",
    )
