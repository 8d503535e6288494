from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from switchboard.services.backoff import BackoffPolicy
from switchboard.services.job_queue import JobQueueManager, QueuePolicy
from switchboard.services.message_dispatcher import ChannelInfo


class FakeClock:
    """Datetime clock for the job queue."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    """Float clock for tickets, conversations and dispatcher windows."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("WORKERS_ENABLED", "false")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def queue_policy():
    return QueuePolicy(
        max_attempts=3,
        backoff=BackoffPolicy(base=2.0, multiplier=2.0, cap=300.0),
        saturation_threshold=100,
        concurrency=2,
        retain_completed=100,
        retain_failed=500,
    )


@pytest.fixture
def manager(clock, queue_policy):
    from switchboard.services.job_queue import QUEUE_NAMES

    return JobQueueManager({name: queue_policy for name in QUEUE_NAMES}, clock=clock)


@pytest.fixture
def webchat_channel():
    return ChannelInfo(id="c1", channel_type="webchat", is_active=True, greeting_message="Hello! How can I help?")


@pytest.fixture
def make_channel():
    def _make(**overrides):
        values = {
            "id": "c1",
            "name": "Test channel",
            "channel_type": "webchat",
            "is_active": True,
            "greeting_message": "Hello!",
            "config": {},
        }
        values.update(overrides)
        channel = Mock()
        for key, value in values.items():
            setattr(channel, key, value)
        channel.webhook_tools = values["config"].get("webhook_tools") or {}
        return channel

    return _make
