"""Pytest configuration and shared fixtures."""

import logging

import logfire
import pytest


logger = logging.getLogger(__name__)


@pytest.fixture(scope="session", autouse=True)
def configure_test_logfire() -> None:
    """Keep spans local so tests never need a Logfire token."""
    logfire.configure(send_to_logfire=False, console=False)
