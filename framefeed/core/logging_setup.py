"""Logging configuration for framefeed."""
import logging
import os
from typing import Optional

from ..utils.config import SETTINGS

# Capture, conversion and the event loop each run on their own thread
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"


def _resolve_level(level: Optional[str]) -> int:
    name = (level or SETTINGS.log_level or os.environ.get("FRAMEFEED_LOGLEVEL", "INFO")).upper()
    return getattr(logging, name, logging.INFO)


def setup_logger(level: Optional[str] = None) -> logging.Logger:
    """
    Configure the root logger once and return the "framefeed" logger.

    Args:
        level: Level name overriding Settings.log_level, e.g. "DEBUG"
    """
    lvl = _resolve_level(level)

    root_logger = logging.getLogger()
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root_logger.addHandler(handler)
    root_logger.setLevel(lvl)

    # aiohttp logs every preview poll at INFO
    logging.getLogger("aiohttp.access").setLevel(max(lvl, logging.WARNING))

    app_logger = logging.getLogger("framefeed")
    app_logger.setLevel(lvl)
    return app_logger
