"""Tests for logging setup."""

import logging

import pytest
import structlog

from home_ingest.config import AppSettings
from home_ingest.logging import setup_logging


@pytest.fixture(autouse=True)
def reset_structlog():
    root = logging.getLogger()
    level, handlers = root.level, root.handlers[:]
    yield
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_json_format():
    setup_logging(AppSettings(log_level="DEBUG", log_format="json"))

    config = structlog.get_config()
    assert isinstance(config["processors"][-1], structlog.processors.JSONRenderer)
    assert config["wrapper_class"].__name__ == "BoundLoggerFilteringAtDebug"


def test_console_format_and_level():
    setup_logging(AppSettings(log_level="ERROR", log_format="console"))

    config = structlog.get_config()
    assert isinstance(config["processors"][-1], structlog.dev.ConsoleRenderer)
    assert config["wrapper_class"].__name__ == "BoundLoggerFilteringAtError"
    assert logging.getLogger().level == logging.ERROR
