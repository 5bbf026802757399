from __future__ import annotations

import logging
import os
import sys
from typing import Optional

_APP_LOGGER_NAME = "notary"
_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"


def setup_logger(level: Optional[str] = None) -> logging.Logger:
    """Configure the application logger once and return it."""
    logger = logging.getLogger(_APP_LOGGER_NAME)
    log_level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logger.setLevel(getattr(logging, log_level, logging.INFO))

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(handler)
        logger.propagate = False

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    if not name:
        return logging.getLogger(_APP_LOGGER_NAME)
    return logging.getLogger(f"{_APP_LOGGER_NAME}.{name}")
