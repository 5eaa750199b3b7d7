"""Unit tests for structured logging configuration."""

import json
import logging

import pytest

from core.logging_config import bind_batch_context, clear_batch_context, configure_logging, get_logger


def json_events(caplog):
    events = []
    for record in caplog.records:
        try:
            events.append(json.loads(record.getMessage()))
        except json.JSONDecodeError:
            pass
    return events


class TestLoggingConfiguration:
    """Test suite for logging configuration."""

    def test_configure_logging_levels(self):
        """Test that configure_logging accepts level names."""
        try:
            configure_logging(log_level="DEBUG")
            configure_logging()
        except Exception as e:
            pytest.fail(f"configure_logging failed: {e}")

    def test_get_logger_returns_structured_logger(self):
        """Test that get_logger returns a structlog logger."""
        configure_logging()
        logger = get_logger("test_module")
        assert hasattr(logger, "info")
        assert hasattr(logger, "warning")
        assert hasattr(get_logger(), "debug")

    def test_json_output_format(self, caplog):
        """Test that events are rendered as JSON with a timestamp."""
        configure_logging(log_level="INFO")
        logger = get_logger("test")

        with caplog.at_level(logging.INFO):
            logger.info("job_finished", job_id="j1", attempts=2)

        events = [e for e in json_events(caplog) if e.get("event") == "job_finished"]
        assert events, "No valid JSON log output found"
        assert events[0]["job_id"] == "j1"
        assert events[0]["attempts"] == 2
        assert "timestamp" in events[0]
        assert events[0]["level"] == "info"


class TestBatchContext:
    """Test batch identifiers bound through contextvars."""

    def test_bound_context_merged_into_events(self, caplog):
        """Test that bound batch identifiers appear on every event until cleared."""
        configure_logging(log_level="INFO")
        logger = get_logger("test")

        with caplog.at_level(logging.INFO):
            bind_batch_context("nightly", batch_id="abc123")
            try:
                logger.info("inside_batch")
            finally:
                clear_batch_context()
            logger.info("outside_batch")

        events = {e["event"]: e for e in json_events(caplog)}
        assert events["inside_batch"]["batch"] == "nightly"
        assert events["inside_batch"]["batch_id"] == "abc123"
        assert "batch" not in events["outside_batch"]
