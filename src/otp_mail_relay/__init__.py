"""HTTP relay that delivers one-time verification codes by email.

This package provides a small FastAPI service sitting in front of an
upstream SMTP relay. Features include:

- Shared-secret authentication via the ``X-API-Key`` header
- Per-identity rate limiting keyed by client address and recipient
- Concurrency admission control with per-request timeouts
- Bounded retry around the outbound SMTP send
- Pooled aiosmtplib connections with an outbound rate limit
- Prometheus metrics and an unauthenticated health endpoint

Example:
    Building the application from environment configuration::

        from otp_mail_relay.config import load_settings
        from otp_mail_relay.relay import VerificationRelay
        from otp_mail_relay.api import create_app

        relay = VerificationRelay(load_settings())
        app = create_app(relay)
"""

__version__ = "0.1.0"
