"""
Tests for the delivery channels.

Tests cover:
- VAPID key generation
- Web Push outcome classification (sent, expired, failed)
- Twilio SMS requests and outcome classification
"""

import base64
from types import SimpleNamespace
from urllib.parse import parse_qs

import httpx
import pytest
from pywebpush import WebPushException

from relay import delivery
from relay.config import Settings
from relay.delivery import TwilioSmsSender, WebPushSender, build_push_payload, generate_vapid_keys
from relay.models import DeliveryStatus


SUBSCRIPTION = {"endpoint": "https://push.example.com/abc", "keys": {"p256dh": "k", "auth": "a"}}


def b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


class TestVapidKeys:
    """Test VAPID key generation."""

    def test_key_shapes(self):
        public_key, private_key = generate_vapid_keys()

        public_bytes = b64url_decode(public_key)
        assert len(public_bytes) == 65
        assert public_bytes[0] == 0x04
        assert len(b64url_decode(private_key)) == 32
        assert "=" not in public_key

    def test_keys_are_fresh(self):
        assert generate_vapid_keys() != generate_vapid_keys()


class TestWebPushSender:
    """Test push outcome classification with pywebpush patched out."""

    @pytest.fixture
    def sender(self):
        return WebPushSender(vapid_private_key="private", vapid_subject="mailto:test@example.com", timeout=3)

    def test_sent(self, sender, monkeypatch):
        calls = []
        monkeypatch.setattr(delivery, "webpush", lambda **kwargs: calls.append(kwargs))

        status = sender.send(SUBSCRIPTION, build_push_payload("Coach", "hi", "2025-01-01T00:00:00.000Z"))

        assert status is DeliveryStatus.SENT
        assert calls[0]["subscription_info"] == SUBSCRIPTION
        assert calls[0]["vapid_private_key"] == "private"
        assert calls[0]["vapid_claims"] == {"sub": "mailto:test@example.com"}
        assert calls[0]["timeout"] == 3

    @pytest.mark.parametrize("status_code", [404, 410])
    def test_expired(self, sender, monkeypatch, status_code):
        def gone(**kwargs):
            raise WebPushException("gone", response=SimpleNamespace(status_code=status_code, text="gone"))

        monkeypatch.setattr(delivery, "webpush", gone)

        assert sender.send(SUBSCRIPTION, "{}") is DeliveryStatus.EXPIRED

    def test_other_push_error_is_failure(self, sender, monkeypatch):
        def throttled(**kwargs):
            raise WebPushException("slow down", response=SimpleNamespace(status_code=429, text="slow down"))

        monkeypatch.setattr(delivery, "webpush", throttled)

        assert sender.send(SUBSCRIPTION, "{}") is DeliveryStatus.FAILED

    def test_transport_error_is_failure(self, sender, monkeypatch):
        def unreachable(**kwargs):
            raise ConnectionError("unreachable")

        monkeypatch.setattr(delivery, "webpush", unreachable)

        assert sender.send(SUBSCRIPTION, "{}") is DeliveryStatus.FAILED


class TestTwilioSmsSender:
    """Test SMS delivery against a mocked Twilio API."""

    def make_sender(self, handler):
        return TwilioSmsSender(
            account_sid="AC123",
            auth_token="secret",
            from_number="+15550001111",
            api_url="https://twilio.test/2010-04-01/",
            transport=httpx.MockTransport(handler),
        )

    def test_sent(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(201, json={"sid": "SM1"})

        sender = self.make_sender(handler)
        status = sender.send("+15551234567", "Code-Baba from Admin: hi")
        sender.close()

        assert status is DeliveryStatus.SENT
        request = requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://twilio.test/2010-04-01/Accounts/AC123/Messages.json"
        assert request.headers["Authorization"] == "Basic " + base64.b64encode(b"AC123:secret").decode()
        assert parse_qs(request.content.decode()) == {
            "To": ["+15551234567"],
            "From": ["+15550001111"],
            "Body": ["Code-Baba from Admin: hi"],
        }

    def test_rejected(self):
        sender = self.make_sender(lambda request: httpx.Response(400, json={"message": "invalid To"}))

        assert sender.send("+1", "hi") is DeliveryStatus.FAILED

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        sender = self.make_sender(handler)

        assert sender.send("+15551234567", "hi") is DeliveryStatus.FAILED

    def test_from_settings_requires_all_credentials(self):
        assert TwilioSmsSender.from_settings(Settings(TWILIO_ACCOUNT_SID="AC1", TWILIO_AUTH_TOKEN="t")) is None

        sender = TwilioSmsSender.from_settings(
            Settings(TWILIO_ACCOUNT_SID="AC1", TWILIO_AUTH_TOKEN="t", TWILIO_PHONE_NUMBER="+15550001111")
        )
        assert isinstance(sender, TwilioSmsSender)
        sender.close()
