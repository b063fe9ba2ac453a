"""Pytest fixtures for querypipe tests."""

import logging
from typing import Generator

import pytest
import structlog

from querypipe.core.errors import ErrorClassifier
from querypipe.execution.scheduling import VirtualScheduler

from tests.helpers import FakeTokenProvider, RecordingSink


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset logging state before and after each test.

    This ensures test isolation for logging configuration.
    """
    from querypipe.cli import helpers as cli_helpers

    original = (
        cli_helpers._log_config.level,
        cli_helpers._log_config.file,
        cli_helpers._log_config.format,
        cli_helpers._log_config.configured,
    )
    cli_helpers.reset_logging_state()

    # Reset structlog to default state
    structlog.reset_defaults()

    # Clear all handlers from root logger
    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    (
        cli_helpers._log_config.level,
        cli_helpers._log_config.file,
        cli_helpers._log_config.format,
        cli_helpers._log_config.configured,
    ) = original

    # Restore original handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)


@pytest.fixture
def scheduler() -> VirtualScheduler:
    """Deterministic clock for batching windows, retry delays and timeouts."""
    return VirtualScheduler()


@pytest.fixture
def classifier() -> ErrorClassifier:
    return ErrorClassifier()


@pytest.fixture
def token_provider() -> FakeTokenProvider:
    return FakeTokenProvider()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()
