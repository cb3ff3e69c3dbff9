"""
Pytest configuration and shared fixtures.
"""

import logging

import pytest

from src.infra.logging_config import PACKAGE_LOGGER_NAME


@pytest.fixture(autouse=True, scope="function")
def reset_package_logger():
    """
    Reset the package logger after each test.

    setup_logging() detaches the package logger from the root logger and
    installs its own handlers; later tests rely on propagation (caplog).
    """
    yield

    package_logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    for handler in list(package_logger.handlers):
        handler.close()
    package_logger.handlers.clear()
    package_logger.propagate = True
    package_logger.setLevel(logging.NOTSET)
