"""Shared fixtures for relay tests."""

import asyncio

import pytest

from otp_mail_relay.config import (
    AdmissionSettings,
    RateLimitSettings,
    RelaySettings,
    RetrySettings,
    SMTPSettings,
)
from otp_mail_relay.prometheus import RelayMetrics
from otp_mail_relay.relay import VerificationRelay

API_KEY = "test-api-key"


class RecordingTransport:
    """In-memory transport recording every message it is asked to send."""

    def __init__(self):
        self.sent = []
        self.failures = 0
        self.hang = False
        self.closed = False

    async def send_message(self, message):
        if self.hang:
            await asyncio.Event().wait()
        if self.failures:
            self.failures -= 1
            raise ConnectionError("connection refused")
        self.sent.append(message)
        return "250 OK queued"

    async def close(self):
        self.closed = True


def make_settings(**overrides) -> RelaySettings:
    values = dict(
        api_key=API_KEY,
        smtp=SMTPSettings(host="smtp.example.com", port=587, user="relay@example.com", password="smtp-secret"),
        rate_limit=RateLimitSettings(window_seconds=300, max_requests=3),
        admission=AdmissionSettings(max_concurrent=10, request_timeout=30),
        retry=RetrySettings(attempts=2, delay=0),
    )
    values.update(overrides)
    return RelaySettings(**values)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def relay(transport):
    return VerificationRelay(make_settings(), transport=transport, metrics=RelayMetrics())
