"""Tests for logging setup."""

from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest
import structlog

from quickfork.config import LogConfig
from quickfork.log import configure_logging, get_logger


@pytest.fixture
def restore_logging() -> Iterator[None]:
    """Undo global logging changes."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    try:
        yield
    finally:
        root.handlers[:] = handlers
        root.setLevel(level)
        structlog.reset_defaults()


@pytest.mark.usefixtures("restore_logging")
class TestConfigureLogging:
    def test_level_and_handler(self) -> None:
        configure_logging(LogConfig(level="debug", json=False))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)

    def test_unknown_level_falls_back_to_info(self) -> None:
        configure_logging(LogConfig(level="chatty", json=False))

        assert logging.getLogger().level == logging.INFO

    def test_json_output(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Test events are rendered as JSON with the emitting pid."""
        configure_logging(LogConfig(level="INFO", json=True))

        get_logger("quickfork.test").info("Worker spawned", fork_id="fork_1")

        line = capsys.readouterr().err.strip().splitlines()[-1]
        assert '"event": "Worker spawned"' in line
        assert '"fork_id": "fork_1"' in line
        assert '"process":' in line


@pytest.mark.usefixtures("restore_logging")
class TestGetLogger:
    """Test library loggers before and after configuration."""

    def test_silent_until_configured(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Test library events never reach stdout without a logging setup."""
        structlog.reset_defaults()

        logger = get_logger("quickfork.pool")
        logger.debug("Worker spawned", fork_id="fork_1")
        logger.info("Run finished", tasks=3)

        captured = capsys.readouterr()
        assert captured.out == ""
        assert captured.err == ""

    def test_package_has_null_handler(self) -> None:
        handlers = logging.getLogger("quickfork").handlers

        assert any(isinstance(handler, logging.NullHandler) for handler in handlers)

    def test_events_go_through_logging(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test events are handed to the standard library logger of the same name."""
        structlog.reset_defaults()
        caplog.set_level(logging.DEBUG, logger="quickfork.pool")

        get_logger("quickfork.pool").debug("Worker spawned", fork_id="fork_1")

        (record,) = [r for r in caplog.records if r.name == "quickfork.pool"]
        assert record.levelno == logging.DEBUG
        assert "Worker spawned" in record.getMessage()
