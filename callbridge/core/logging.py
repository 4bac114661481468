"""
Logging configuration for CallBridge
"""

import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Vendor SDKs log every HTTP request and socket frame at INFO/DEBUG
NOISY_LOGGERS = ("twilio.http_client", "httpx", "httpcore", "websockets")


def setup_logging(level: Optional[str] = None) -> logging.Logger:
    """
    Configure logging for the application

    Installs a single stdout handler on the root logger, replacing any
    handlers left by a previous call, and quiets vendor SDK loggers.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        The "callbridge" application logger
    """
    from .config import settings

    numeric_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    app_logger = logging.getLogger("callbridge")
    app_logger.setLevel(numeric_level)
    return app_logger


def get_logger(name: str) -> logging.Logger:
    """Logger under the "callbridge" namespace; accepts a bare name or __name__"""
    if name == "callbridge" or name.startswith("callbridge."):
        return logging.getLogger(name)
    return logging.getLogger(f"callbridge.{name}")
