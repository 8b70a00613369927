"""Unit tests configuration file."""

import logging

import pytest


@pytest.fixture(autouse=True)
def debug_logging(caplog):
    """Trace every sent and dispatched message while a test runs."""
    caplog.set_level(logging.DEBUG, logger="yutani")
    return caplog
