"""
Logging setup built on loguru.

Usage:
    from wasession.logger import get_logger, setup_logging

    setup_logging(level="DEBUG")
    logger = get_logger(__name__)
"""

import sys
from typing import Optional

from loguru import logger as _logger

LOG_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)

_logger.configure(extra={"name": "wasession"})


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Replace the default loguru sinks with a stderr sink and optional file."""
    _logger.remove()
    _logger.add(sys.stderr, level=level.upper(), format=LOG_FORMAT)

    if log_file:
        _logger.add(
            log_file,
            level="DEBUG",
            format=LOG_FORMAT,
            rotation="10 MB",
            retention=5,
            encoding="utf-8",
        )


def get_logger(name: str):
    """Return a loguru logger bound to the given module name."""
    return _logger.bind(name=name)
