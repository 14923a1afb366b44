"""
Pytest configuration and shared fixtures.

Every test gets its own data directory and an app wired to in-memory fake
push/SMS senders, so nothing leaves the process.
"""

import pytest
from fastapi.testclient import TestClient

from relay.config import Settings, get_settings
from relay.main import create_app
from relay.models import DeliveryStatus

# Clear settings cache so nothing cached at import time leaks into tests
get_settings.cache_clear()


class FakePushSender:
    """Records every push; outcome per endpoint defaults to SENT."""

    def __init__(self):
        self.calls = []
        self.outcomes = {}

    def send(self, subscription, payload):
        self.calls.append((subscription, payload))
        endpoint = subscription.get("endpoint") if isinstance(subscription, dict) else subscription
        return self.outcomes.get(endpoint, DeliveryStatus.SENT)

    @property
    def endpoints(self):
        return [subscription["endpoint"] for subscription, _ in self.calls]


class FakeSmsSender:
    """Records every SMS; outcome per phone number defaults to SENT."""

    def __init__(self):
        self.calls = []
        self.outcomes = {}

    def send(self, to, body):
        self.calls.append((to, body))
        return self.outcomes.get(to, DeliveryStatus.SENT)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(DATA_DIR=str(tmp_path / "data"), LOG_LEVEL="WARNING")


@pytest.fixture
def push_sender() -> FakePushSender:
    return FakePushSender()


@pytest.fixture
def sms_sender() -> FakeSmsSender:
    return FakeSmsSender()


@pytest.fixture
def client(settings, push_sender, sms_sender):
    """Test client over a fresh data directory with fake delivery channels."""
    app = create_app(settings, push_sender=push_sender, sms_sender=sms_sender)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def codes(client):
    """(group_code, admin_code) generated for this test's deployment."""
    record = client.app.state.identity.get_or_create()
    return record.group_code, record.admin_code
