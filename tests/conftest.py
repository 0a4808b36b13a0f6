"""Pytest configuration and shared fixtures."""

import pytest

from tests.fakes import FakeChannel, FakeEngine


@pytest.fixture(autouse=True)
def reset_logging_state():
    """Reset logging state before each test."""
    from rtcnego.logging import reset_logging

    reset_logging()
    yield
    reset_logging()


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def channel():
    return FakeChannel()
