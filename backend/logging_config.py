"""Logging for the API process: one stdout handler on the ``backend`` logger tree.

Request lines go to ``backend.access`` (see ``main.log_requests``), which
replaces uvicorn's own access log.
"""

import logging
import sys

from .config import Settings

ACCESS_LOGGER = "backend.access"
LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(settings: Settings) -> logging.Logger:
    logger = logging.getLogger("backend")
    # Level is re-applied on every call; the handler is installed once
    logger.setLevel(settings.log_level)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    # heartbeats and topology changes
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    return logger


def access_logger() -> logging.Logger:
    return logging.getLogger(ACCESS_LOGGER)
