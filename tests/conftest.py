"""
Pytest configuration and fixtures for AutoPerp tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from infra.metrics import MetricsRecorder
from tests.helpers import FrozenClock, RecordingExchange


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def venue():
    """Paper venue with a few marks set and 10k balance"""
    return RecordingExchange(
        initial_balance=10_000.0,
        prices={"BTCUSDT": 100.0, "ETHUSDT": 100.0, "SOLUSDT": 100.0},
    )
