"""Tests for root logger setup."""

import json
import logging

import pytest
from pythonjsonlogger.json import JsonFormatter

from app.config import Settings
from app.utils.logging_config import setup_logging


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.unit
def test_json_format_emits_json_lines(root_logger):
    setup_logging(Settings(log_format="json"))

    formatter = root_logger.handlers[-1].formatter
    assert isinstance(formatter, JsonFormatter)

    record = logging.LogRecord("app.services.sweeper", logging.INFO, __file__, 1, "Sweep finished", None, None)
    record.listings_expired = 2
    line = json.loads(formatter.format(record))

    assert line["message"] == "Sweep finished"
    assert line["level"] == "INFO"
    assert line["listings_expired"] == 2


@pytest.mark.unit
def test_text_format_and_quiet_libraries(root_logger):
    setup_logging(Settings(log_format="text"))

    assert len(root_logger.handlers) == 1
    assert not isinstance(root_logger.handlers[0].formatter, JsonFormatter)
    assert logging.getLogger("botocore").level == logging.WARNING
