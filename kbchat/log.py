"""Structured logging setup shared by the web app and scripts."""
import logging
import sys

import structlog

from kbchat import config


def configure_logging(level: str = None) -> None:
    """Configure structlog to render JSON lines through stdlib logging.

    Args:
        level: Log level name (defaults to config.LOG_LEVEL)
    """
    level = (level or config.LOG_LEVEL).upper()

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
