"""Structured logging setup."""

import logging
import sys

import structlog

from .config import AppSettings


def setup_logging(settings: AppSettings) -> None:
    """Configure structlog and the standard library root logger.

    Args:
        settings: Application settings carrying level and output format.
    """
    level = getattr(logging, settings.log_level)

    shared_processors: list[structlog.typing.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if settings.log_format == "json":
        renderer: structlog.typing.Processor = structlog.processors.JSONRenderer()
        shared_processors.append(structlog.processors.format_exc_info)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Route third-party stdlib logging (influxdb_client, urllib3) to stderr.
    logging.basicConfig(level=max(level, logging.WARNING), stream=sys.stderr, force=True)
