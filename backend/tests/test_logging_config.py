"""
Test logging setup driven by Settings.
"""

import json
import logging

import pytest

from taskgraph.config import Settings
from taskgraph.logging_config import ColoredFormatter, JsonFormatter, get_logger, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestSetupLogging:

    def test_json_lines_from_settings(self, restore_root_logger):
        setup_logging(Settings(log_level="WARNING", log_json=True))

        handler = restore_root_logger.handlers[-1]
        assert isinstance(handler.formatter, JsonFormatter)
        assert restore_root_logger.level == logging.WARNING

        record = logging.LogRecord("taskgraph.x", logging.ERROR, __file__, 1, "boom", None, None)
        assert json.loads(handler.formatter.format(record))["message"] == "boom"

    def test_explicit_arguments_override_settings(self, restore_root_logger):
        setup_logging(Settings(log_level="WARNING", log_json=True), level="DEBUG", json_format=False)

        assert isinstance(restore_root_logger.handlers[-1].formatter, ColoredFormatter)
        assert restore_root_logger.level == logging.DEBUG


def test_get_logger_prefixes_namespace():
    assert get_logger("custom").name == "taskgraph.custom"
    assert get_logger("taskgraph.services.cache").name == "taskgraph.services.cache"
