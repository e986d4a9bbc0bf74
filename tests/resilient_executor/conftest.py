from __future__ import annotations

import pytest

from tests.resilient_executor.support.fakes import (
    FakeClock,
    FakeConnectionFactory,
    FakeLogger,
    RecordingObserver,
)


@pytest.fixture
def fake_logger() -> FakeLogger:
    """Provide a fresh structured logger test double per test."""
    return FakeLogger()


@pytest.fixture
def connection_factory() -> FakeConnectionFactory:
    """Provide a fresh recording resource factory per test."""
    return FakeConnectionFactory()


@pytest.fixture
def recording_observer() -> RecordingObserver:
    """Provide a fresh execution observer per test."""
    return RecordingObserver()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Provide a manually advanced monotonic clock."""
    return FakeClock()
