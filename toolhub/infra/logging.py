"""Structured logging configuration."""

import logging
import sys
from pythonjsonlogger import jsonlogger
from toolhub.infra.config import config


def setup_logging(debug: bool = None):
    """Setup structured JSON logging for the toolhub logger tree."""
    if debug is None:
        debug = config.DEBUG

    logger = logging.getLogger("toolhub")
    logger.setLevel(logging.DEBUG if debug else logging.INFO)

    # Remove existing handlers
    logger.handlers = []

    formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # Set levels for third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("rq.worker").setLevel(logging.INFO)

    return logger
