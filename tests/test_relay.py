import asyncio

import pytest

from otp_mail_relay.config import AdmissionSettings, RateLimitSettings, RetrySettings
from otp_mail_relay.errors import BadRequest, DeliveryFailed, Overloaded, RateLimited, RequestTimeout
from otp_mail_relay.prometheus import RelayMetrics
from otp_mail_relay.relay import VerificationRelay

from conftest import RecordingTransport, make_settings

PAYLOAD = {"to": "user@example.com", "subject": "Your code", "code": "123456"}


@pytest.mark.asyncio
async def test_handle_send_delivers_rendered_message(relay, transport):
    result = await relay.handle_send(dict(PAYLOAD, **{"from": "Meds Team"}), "10.0.0.1")

    assert result == {"success": True, "message": "Email sent"}
    assert len(transport.sent) == 1
    message = transport.sent[0]
    assert message["To"] == "user@example.com"
    assert message["Subject"] == "Your code"
    assert message["From"] == "Meds Team <relay@example.com>"
    assert relay.admission.in_flight == 0


@pytest.mark.asyncio
async def test_missing_fields_are_rejected_before_counting(relay, transport):
    with pytest.raises(BadRequest) as excinfo:
        await relay.handle_send({"to": "user@example.com"}, "10.0.0.1")

    assert excinfo.value.missing == ["subject", "code"]
    assert transport.sent == []
    assert relay.rate_limiter.count("10.0.0.1:user@example.com") == 0


@pytest.mark.asyncio
async def test_fourth_request_for_identity_is_rate_limited(relay, transport):
    for _ in range(3):
        await relay.handle_send(PAYLOAD, "10.0.0.1")

    with pytest.raises(RateLimited) as excinfo:
        await relay.handle_send(PAYLOAD, "10.0.0.1")

    assert 1 <= excinfo.value.retry_after <= 300
    assert len(transport.sent) == 3
    # Another recipient from the same address has its own budget
    await relay.handle_send(dict(PAYLOAD, to="other@example.com"), "10.0.0.1")
    # Same recipient from another address as well
    await relay.handle_send(PAYLOAD, "10.0.0.2")
    assert len(transport.sent) == 5


@pytest.mark.asyncio
async def test_overload_rejects_without_delivering():
    transport = RecordingTransport()
    transport.hang = True
    relay = VerificationRelay(
        make_settings(admission=AdmissionSettings(max_concurrent=1, request_timeout=0)),
        transport=transport,
        metrics=RelayMetrics(),
    )
    pending = asyncio.create_task(relay.handle_send(PAYLOAD, "10.0.0.1"))
    await asyncio.sleep(0)
    assert relay.admission.in_flight == 1

    with pytest.raises(Overloaded):
        await relay.handle_send(dict(PAYLOAD, to="other@example.com"), "10.0.0.1")

    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending
    assert relay.admission.in_flight == 0


@pytest.mark.asyncio
async def test_timeout_releases_admission_slot():
    transport = RecordingTransport()
    transport.hang = True
    relay = VerificationRelay(
        make_settings(admission=AdmissionSettings(max_concurrent=2, request_timeout=0.05)),
        transport=transport,
        metrics=RelayMetrics(),
    )

    with pytest.raises(RequestTimeout):
        await relay.handle_send(PAYLOAD, "10.0.0.1")

    assert relay.admission.in_flight == 0
    assert b"omr_in_flight_requests 0.0" in relay.metrics.generate_latest()


@pytest.mark.asyncio
async def test_delivery_failure_after_retries():
    transport = RecordingTransport()
    transport.failures = 5
    relay = VerificationRelay(
        make_settings(retry=RetrySettings(attempts=2, delay=0)),
        transport=transport,
        metrics=RelayMetrics(),
    )

    with pytest.raises(DeliveryFailed) as excinfo:
        await relay.handle_send(PAYLOAD, "10.0.0.1")

    assert excinfo.value.attempts == 3
    assert transport.failures == 2
    assert relay.admission.in_flight == 0


def test_health_reports_configuration_without_secrets(relay):
    before = relay.rate_limiter.snapshot()

    body = relay.health()

    assert body["status"] == "OK"
    assert body["timestamp"].endswith("Z")
    assert body["smtp"]["host"] == "smtp.example.com"
    assert body["smtp"]["port"] == 587
    assert body["smtp"]["user"] == "relay@example.com"
    assert body["security"]["apiKeyRequired"] is True
    assert body["security"]["rateLimit"]["maxRequests"] == 3
    assert body["security"]["admission"]["inFlight"] == 0
    assert body["security"]["retry"] == {"attempts": 2, "delaySeconds": 0, "backoff": "fixed"}
    rendered = repr(body)
    assert "smtp-secret" not in rendered
    assert "test-api-key" not in rendered
    assert relay.rate_limiter.snapshot() == before


def test_record_rejection_labels_reason(relay):
    relay.record_rejection(RateLimited(10))
    relay.record_rejection(Overloaded(5))
    relay.record_rejection(BadRequest(["to"]))

    output = relay.metrics.generate_latest()
    assert b'omr_rejected_total{reason="rate_limited"} 1.0' in output
    assert b'omr_rejected_total{reason="overloaded"} 1.0' in output
    assert b'omr_rejected_total{reason="bad_request"} 1.0' in output


@pytest.mark.asyncio
async def test_close_closes_transport(relay, transport):
    await relay.close()
    assert transport.closed is True


@pytest.mark.asyncio
async def test_started_relay_prunes_expired_windows(transport):
    relay = VerificationRelay(
        make_settings(rate_limit=RateLimitSettings(window_seconds=0.01, max_requests=3)),
        transport=transport,
        metrics=RelayMetrics(),
        cleanup_interval=0.01,
    )
    await relay.handle_send(PAYLOAD, "10.0.0.1")
    assert relay.rate_limiter.snapshot()["trackedKeys"] == 1

    relay.start()
    try:
        for _ in range(100):
            if relay.rate_limiter.snapshot()["trackedKeys"] == 0:
                break
            await asyncio.sleep(0.01)
    finally:
        await relay.close()

    assert relay.rate_limiter.snapshot()["trackedKeys"] == 0
    assert relay._task_cleanup is None
    assert transport.closed is True


@pytest.mark.asyncio
async def test_close_without_start_only_closes_transport(relay, transport):
    await relay.close()
    assert transport.closed is True
