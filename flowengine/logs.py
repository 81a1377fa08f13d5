"""Structured logging setup."""

import logging
import sys
from typing import Optional

import structlog

from .config import Settings, get_settings
from .exceptions import ConfigurationError


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog on top of the standard library logger."""
    settings = settings or get_settings()

    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        raise ConfigurationError(f"Unknown log level: {settings.log_level}")

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    use_json = settings.log_json if settings.log_json is not None else settings.is_production

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if use_json else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
