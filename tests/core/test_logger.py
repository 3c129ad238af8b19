"""
Tests for logging setup.
"""

import logging
from unittest.mock import patch

import structlog

from src.core.logger import LOG_LEVELS, setup_logging


class TestSetupLogging:
    """Tests for setup_logging."""

    @patch("src.core.logger.structlog.configure")
    @patch("src.core.logger.logging.basicConfig")
    def test_console_output(self, mock_basic_config, mock_configure):
        setup_logging(level=logging.DEBUG, colors=False)

        mock_basic_config.assert_called_once_with(level=logging.DEBUG)
        kwargs = mock_configure.call_args.kwargs
        assert kwargs["cache_logger_on_first_use"] is True
        assert isinstance(kwargs["processors"][-1], structlog.dev.ConsoleRenderer)

    @patch("src.core.logger.structlog.configure")
    @patch("src.core.logger.logging.basicConfig")
    def test_json_output(self, mock_basic_config, mock_configure):
        setup_logging(json_logs=True)

        processors = mock_configure.call_args.kwargs["processors"]
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)

    def test_level_names(self):
        assert LOG_LEVELS["WARNING"] == logging.WARNING
        assert set(LOG_LEVELS) == {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
