"""
Central logging configuration for calendarfeed.

Suppresses verbose debug logs from HTTP and parsing libraries while keeping the
feed engine's own diagnostics, and installs a colorized console handler when the
host application has not configured one.
"""

import logging
import os
import sys
from typing import Optional

from colorlog import ColoredFormatter

DEBUG_ENV = "CALENDARFEED_DEBUG"
LOG_LEVEL_ENV = "CALENDARFEED_LOG_LEVEL"

# HH:MM:SS  LEVEL   logger.name: message, only the level is colorized
CONSOLE_FORMAT = "%(asctime)s %(log_color)s%(levelname)-7s%(reset)s %(name)s: %(message)s"
LOG_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "bold_red",
}

NOISY_LOGGERS: dict[str, int] = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "asyncio": logging.WARNING,
    "icalendar": logging.INFO,
}

FEED_MODULES = [
    "calendarfeed",
    "calendarfeed.feed_client",
    "calendarfeed.feed_normalizer",
    "calendarfeed.feed_scheduler",
    "calendarfeed.feed_hub",
]


def create_console_handler(level: int = logging.NOTSET) -> logging.Handler:
    """Create a stderr handler with the colorized console format."""
    handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    formatter = ColoredFormatter(CONSOLE_FORMAT, datefmt="%H:%M:%S", log_colors=LOG_COLORS)
    handler.setFormatter(formatter)
    return handler


def configure_feed_logging(debug_mode: bool = False, force_debug: Optional[bool] = None) -> None:
    """
    Configure logging levels for calendarfeed.

    Args:
        debug_mode: Whether to enable debug logging for calendarfeed modules
        force_debug: Override debug mode setting (None to use env var detection)

    Environment Variables:
        CALENDARFEED_DEBUG: Set to '1', 'true', 'yes' to force debug logging
        CALENDARFEED_LOG_LEVEL: Override root log level (DEBUG, INFO, WARNING, ERROR)
    """
    env_debug = os.getenv(DEBUG_ENV, "").strip().lower() in ("1", "true", "yes", "on")
    env_log_level = os.getenv(LOG_LEVEL_ENV, "").strip().upper()

    if force_debug is not None:
        final_debug = force_debug
    elif env_debug:
        final_debug = True
    else:
        final_debug = debug_mode

    root_level = logging.DEBUG if final_debug else logging.INFO
    if env_log_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
        root_level = getattr(logging, env_log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)

    # Keep handlers installed by the host application
    if not root_logger.handlers:
        root_logger.addHandler(create_console_handler(root_level))

    logger_config = dict(NOISY_LOGGERS)
    feed_level = logging.DEBUG if final_debug else logging.INFO
    for module in FEED_MODULES:
        logger_config[module] = feed_level

    for logger_name, level in logger_config.items():
        logging.getLogger(logger_name).setLevel(level)

    if final_debug:
        root_logger.info("Debug logging enabled for calendarfeed modules")
    else:
        root_logger.debug("Production logging configuration applied")


def get_logging_status() -> dict[str, str]:
    """
    Get current logging configuration status.

    Returns:
        Dictionary mapping logger names to their current levels
    """
    status = {"root": logging.getLevelName(logging.getLogger().level)}
    for logger_name in ["calendarfeed", *NOISY_LOGGERS]:
        status[logger_name] = logging.getLevelName(logging.getLogger(logger_name).level)
    return status
