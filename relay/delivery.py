"""
Outbound delivery channels.

- Web Push via pywebpush, signed with the deployment's VAPID key
- SMS via the Twilio REST API (httpx)

Senders never raise for a failed delivery; they report a DeliveryStatus so a
broadcast can keep going to the remaining recipients.
"""

import json
import logging
from typing import Optional, Protocol, Tuple

import httpx
from cryptography.hazmat.primitives import serialization
from py_vapid import Vapid
from py_vapid.utils import b64urlencode
from pywebpush import WebPushException, webpush

from relay.config import Settings
from relay.models import DeliveryStatus, PushSubscription

logger = logging.getLogger(__name__)

# Push service answers meaning the subscription is gone for good
EXPIRED_STATUS_CODES = (404, 410)


class PushSender(Protocol):
    def send(self, subscription: PushSubscription, payload: str) -> DeliveryStatus: ...


class SmsSender(Protocol):
    def send(self, to: str, body: str) -> DeliveryStatus: ...


def generate_vapid_keys() -> Tuple[str, str]:
    """
    Generate a P-256 VAPID key pair.

    Returns:
        (public_key, private_key), both base64url without padding: the
        uncompressed public point browsers expect as applicationServerKey,
        and the raw 32-byte private value pywebpush accepts.
    """
    vapid = Vapid()
    vapid.generate_keys()
    public_bytes = vapid.public_key.public_bytes(
        serialization.Encoding.X962,
        serialization.PublicFormat.UncompressedPoint,
    )
    private_bytes = vapid.private_key.private_numbers().private_value.to_bytes(32, "big")
    return b64urlencode(public_bytes), b64urlencode(private_bytes)


def build_push_payload(title: str, body: str, timestamp: str) -> str:
    return json.dumps({"title": title, "body": body, "timestamp": timestamp})


class WebPushSender:
    """Delivers one encrypted payload to one browser push subscription."""

    def __init__(self, vapid_private_key: str, vapid_subject: str, timeout: float = 10.0):
        self._private_key = vapid_private_key
        self._subject = vapid_subject
        self._timeout = timeout

    def send(self, subscription: PushSubscription, payload: str) -> DeliveryStatus:
        endpoint = subscription.get("endpoint", "?") if isinstance(subscription, dict) else "?"
        try:
            webpush(
                subscription_info=subscription,
                data=payload,
                vapid_private_key=self._private_key,
                # pywebpush adds aud/exp to the claims dict, so hand it a fresh one
                vapid_claims={"sub": self._subject},
                timeout=self._timeout,
            )
        except WebPushException as exc:
            status_code = getattr(exc.response, "status_code", None)
            if status_code in EXPIRED_STATUS_CODES:
                logger.warning(f"Push subscription expired (status={status_code}): {endpoint}")
                return DeliveryStatus.EXPIRED
            logger.error(f"Push delivery failed (status={status_code}): {exc}")
            return DeliveryStatus.FAILED
        except Exception as exc:
            logger.error(f"Push delivery failed: {exc}")
            return DeliveryStatus.FAILED
        return DeliveryStatus.SENT


class TwilioSmsSender:
    """Sends text messages through Twilio's Messages endpoint."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        api_url: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._from_number = from_number
        self._url = f"{api_url.rstrip('/')}/Accounts/{account_sid}/Messages.json"
        self._client = httpx.Client(auth=(account_sid, auth_token), timeout=timeout, transport=transport)

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["TwilioSmsSender"]:
        """Build a sender, or return None when Twilio is not fully configured."""
        if not settings.sms_enabled:
            return None
        return cls(
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            from_number=settings.TWILIO_PHONE_NUMBER,
            api_url=settings.TWILIO_API_URL,
            timeout=settings.DELIVERY_TIMEOUT_SECONDS,
        )

    def send(self, to: str, body: str) -> DeliveryStatus:
        try:
            resp = self._client.post(self._url, data={"To": to, "From": self._from_number, "Body": body})
        except httpx.HTTPError as exc:
            logger.error(f"SMS delivery to {to} failed: {exc}")
            return DeliveryStatus.FAILED

        if resp.status_code < 300:
            return DeliveryStatus.SENT
        logger.error(f"Twilio returned {resp.status_code} for {to}: {resp.text[:200]}")
        return DeliveryStatus.FAILED

    def close(self) -> None:
        self._client.close()
