"""
Logging configuration for the payment integrity service.

Provides structured logging for production monitoring and debugging.
"""

import logging
import sys
from typing import Optional

from ..config import settings


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a configured logger instance.

    Child loggers (``payguard.<area>``) propagate to the root ``payguard``
    logger, which owns the single stdout handler.

    Args:
        name: Logger name (defaults to 'payguard')

    Returns:
        Configured logger instance
    """
    logger_name = name or "payguard"
    root = logging.getLogger("payguard")

    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)
        root.setLevel(settings.app_log_level)

    return logging.getLogger(logger_name)


# Default logger instance
logger = get_logger()
