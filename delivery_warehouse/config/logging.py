"""
Logging Configuration for the Food Delivery Warehouse

Structured logging over the standard library handlers. Merge cycles log one
event per stage; driver loggers stay at WARNING unless SQL echo is enabled.
"""

import logging
import sys
from typing import List, Optional, TextIO

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import add_log_level, ProcessorFormatter

from delivery_warehouse.config.settings import get_settings

DRIVER_LOGGERS = ("sqlalchemy.engine", "aiosqlite", "asyncpg")


def _shared_processors() -> List:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        add_log_level,
        TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def _renderer(log_format: str, stream: TextIO):
    if log_format == "json":
        return JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=stream.isatty())


def configure_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    stream: Optional[TextIO] = None,
) -> None:
    """
    Configure structured logging for merge runs.

    Args:
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
        log_format: Override renderer, ``json`` or console
        stream: Output stream, stdout by default
    """
    settings = get_settings()
    level = log_level or settings.monitoring.log_level
    log_format = log_format or settings.monitoring.log_format
    stream = stream or sys.stdout

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    shared = _shared_processors()

    structlog.configure(
        processors=shared + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream)
    handler.setLevel(numeric_level)
    handler.setFormatter(ProcessorFormatter(
        processor=_renderer(log_format, stream),
        foreign_pre_chain=shared,
    ))

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    driver_level = logging.INFO if settings.database.echo else logging.WARNING
    for name in DRIVER_LOGGERS:
        logging.getLogger(name).setLevel(driver_level)

    structlog.get_logger(__name__).info(
        "Logging configured",
        level=level,
        format=log_format,
        environment=settings.app_env,
    )
