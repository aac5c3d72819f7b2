"""Fixtures for the logging tests."""

import logging
from pathlib import Path
from typing import Generator

import pytest
import structlog

from indexpilot.config.models import LoggingConfig
from indexpilot.logging.factory import LoggerFactory, shutdown_logging


@pytest.fixture
def temp_log_file(tmp_path: Path) -> Path:
    """Log file path inside the test's temporary directory."""
    return tmp_path / "logs" / "indexpilot.log"


@pytest.fixture
def sample_logging_config(temp_log_file: Path) -> LoggingConfig:
    """File-only JSON logging with a small audit trail."""
    return LoggingConfig(
        level="INFO",
        format="json",
        file_path=temp_log_file,
        console_output=False,
        max_file_size=1048576,
        backup_count=3,
        audit_trail_size=50,
    )


@pytest.fixture
def logger_factory() -> Generator[LoggerFactory, None, None]:
    """Private factory, shut down after the test."""
    factory = LoggerFactory()
    yield factory
    factory.shutdown()


@pytest.fixture(autouse=True)
def restore_logging() -> Generator[None, None, None]:
    """Undo any output configuration a test applied."""
    root_logger = logging.getLogger()
    level = root_logger.level
    handlers = list(root_logger.handlers)

    yield

    shutdown_logging()
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)
    structlog.configure(
        processors=[structlog.testing.LogCapture()],
        wrapper_class=structlog.BoundLogger,
        logger_factory=structlog.testing.ReturnLoggerFactory(),
        cache_logger_on_first_use=False,
    )
