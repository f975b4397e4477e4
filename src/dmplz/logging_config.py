"""Loguru setup shared by the hook and the MCP server."""

import sys
from typing import Optional

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> | <level>{message}</level>"
)


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Route loguru output to stderr and an optional rotating file.

    stdout carries hook JSON and MCP stdio traffic, so nothing may log there.

    Args:
        level: Minimum level for the stderr sink
        log_file: Optional path for a DEBUG-level file sink
    """
    logger.remove()  # Remove default handler

    logger.add(sys.stderr, format=LOG_FORMAT, level=level)

    if log_file:
        logger.add(
            log_file,
            rotation="10 MB",
            retention="7 days",
            level="DEBUG",
        )
