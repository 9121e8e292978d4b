"""Shared fixtures: settings, a controllable clock and a fake OpenAI client."""
import json
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, Mock

from feedbackspec.config.settings import Settings
from feedbackspec.agents.gateway import RequestGateway
from feedbackspec.data_access.store import InMemoryStore
from feedbackspec.models.schemas import FeedbackItem


class FakeClock:
    """Manually advanced clock usable both as epoch seconds and as a datetime source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def datetime(self) -> datetime:
        return datetime.fromtimestamp(self.now, tz=timezone.utc)


def completion(content):
    """Build an object shaped like a chat completion response."""
    return Mock(
        choices=[Mock(message=Mock(content=content))],
        usage=Mock(total_tokens=42, prompt_tokens=30, completion_tokens=12),
    )


@pytest.fixture
def config():
    """Configured settings with upstream retries and the background sweep disabled."""
    return Settings(openai_api_key="test-key", upstream_max_retries=0,
                    maintenance_interval_seconds=0, _env_file=None)


@pytest.fixture
def unconfigured_config():
    return Settings(openai_api_key=None, _env_file=None)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_client():
    """Fake AsyncOpenAI client; tests set create.return_value / side_effect."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=completion("ok"))
    client.close = AsyncMock()
    return client


@pytest.fixture
def make_completion():
    return completion


@pytest.fixture
def reply(fake_client):
    """Set the JSON (or raw text) the fake client answers with."""
    def _reply(payload):
        content = payload if isinstance(payload, str) else json.dumps(payload)
        fake_client.chat.completions.create.return_value = completion(content)
        fake_client.chat.completions.create.side_effect = None
    return _reply


@pytest.fixture
def gateway(config, fake_client, clock):
    return RequestGateway(config, client=fake_client, clock=clock)


@pytest.fixture
def unconfigured_gateway(unconfigured_config):
    return RequestGateway(unconfigured_config, client=None)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def make_items():
    """Create n feedback items with ids fb1..fbn and increasing timestamps."""
    def _make(n, start=0):
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        return [
            FeedbackItem(
                id=f"fb{i}",
                content=f"Feedback number {i}",
                platform="manual",
                created_at=base + timedelta(minutes=i),
            )
            for i in range(start + 1, start + n + 1)
        ]
    return _make
