# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Core orchestration of the verification mail relay.

:class:`VerificationRelay` owns every piece of process-wide state (the rate
limit table, the admission counter, the SMTP pool and the metrics) and
composes them into the single business operation of the service:

1. validate the request body
2. count the request against its (client address, recipient) identity
3. admit it under the concurrency cap and request deadline
4. render the verification email and deliver it with retries

The credential check happens in the HTTP layer before any of this runs.

Example:
    Using the relay without HTTP::

        relay = VerificationRelay(load_settings())
        result = await relay.handle_send(
            {"to": "user@example.com", "subject": "Code", "code": "123456"},
            client_address="127.0.0.1",
        )
        await relay.close()
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from .admission import AdmissionController
from .config import RelaySettings
from .delivery import DeliveryClient, DeliveryReceipt, RetryPolicy, Transport
from .errors import RateLimited, RelayError
from .logger import get_logger
from .message import DeliveryRequest, build_message
from .prometheus import RelayMetrics
from .rate_limit import IdentityRateLimiter, rate_limit_key
from .smtp_pool import SMTPPool

SUCCESS_MESSAGE = "Email sent"


class VerificationRelay:
    """Request pipeline and shared state of the relay.

    Attributes:
        settings: The immutable configuration the relay was built from.
        metrics: Prometheus metrics collector.
        rate_limiter: Per-identity fixed-window limiter.
        admission: Process-wide concurrency and deadline controller.
        transport: Outbound transport, an :class:`SMTPPool` by default.
        delivery: Retrying delivery client bound to ``transport``.
        cleanup_interval: Seconds between sweeps of expired rate-limit
            windows while the relay is started.
    """

    def __init__(
        self,
        settings: RelaySettings,
        *,
        transport: Transport | None = None,
        metrics: RelayMetrics | None = None,
        logger=None,
        cleanup_interval: float | None = None,
    ):
        self.settings = settings
        self.logger = logger or get_logger()
        self.metrics = metrics or RelayMetrics()
        self.rate_limiter = IdentityRateLimiter(
            window_seconds=settings.rate_limit.window_seconds,
            max_requests=settings.rate_limit.max_requests,
            max_keys=settings.rate_limit.max_keys,
        )
        self.admission = AdmissionController(
            max_concurrent=settings.admission.max_concurrent,
            request_timeout=settings.admission.request_timeout,
            throttle_enabled=settings.admission.throttle_enabled,
            throttle_delay=settings.admission.throttle_delay,
            overload_retry_after=settings.admission.overload_retry_after,
        )
        self.transport = transport or SMTPPool.from_settings(settings.smtp)
        self.delivery = DeliveryClient(
            self.transport,
            RetryPolicy.from_settings(settings.retry),
            metrics=self.metrics,
        )
        if cleanup_interval is None:
            cleanup_interval = max(1.0, settings.rate_limit.window_seconds)
        self.cleanup_interval = cleanup_interval
        self._stop: asyncio.Event | None = None
        self._task_cleanup: asyncio.Task | None = None

    @property
    def mailbox(self) -> str:
        return self.settings.smtp.user or ""

    @staticmethod
    def _utc_now_iso() -> str:
        return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    def check_rate_limit(self, client_address: str | None, recipient: str | None) -> None:
        """Count one request for the caller identity.

        Raises:
            RateLimited: If the identity exhausted its window.
        """
        key = rate_limit_key(client_address, recipient)
        decision = self.rate_limiter.hit(key)
        if not decision.allowed:
            self.logger.warning("Rate limit exceeded for %s", key)
            raise RateLimited(decision.retry_after or 1)

    async def deliver(self, request: DeliveryRequest) -> DeliveryReceipt:
        """Render and deliver one verification email."""
        message = build_message(
            request,
            mailbox=self.mailbox,
            default_from_name=self.settings.mail.from_name,
            brand=self.settings.mail.brand_name,
            validity_minutes=self.settings.mail.code_validity_minutes,
        )
        return await self.delivery.deliver(message)

    async def _admitted_delivery(self, request: DeliveryRequest) -> DeliveryReceipt:
        self.metrics.set_in_flight(self.admission.in_flight)
        return await self.deliver(request)

    async def handle_send(self, payload: dict[str, Any], client_address: str | None) -> dict[str, Any]:
        """Run the full send pipeline for an authenticated request.

        Args:
            payload: Decoded JSON body with ``to``, ``subject``, ``code`` and
                optional ``from``.
            client_address: Network address of the caller.

        Returns:
            The success acknowledgment body.

        Raises:
            RelayError: ``BadRequest``, ``RateLimited``, ``Overloaded``,
                ``RequestTimeout`` or ``DeliveryFailed``.
        """
        request = DeliveryRequest.from_payload(payload)
        self.check_rate_limit(client_address, request.to)
        try:
            await self.admission.run(lambda: self._admitted_delivery(request))
        finally:
            self.metrics.set_in_flight(self.admission.in_flight)
        return {"success": True, "message": SUCCESS_MESSAGE}

    def record_rejection(self, exc: RelayError) -> None:
        """Count a rejected request in the metrics, labeled by reason."""
        reason = {
            400: "bad_request",
            401: "unauthorized",
            408: "timeout",
        }.get(exc.status_code)
        if exc.status_code == 429:
            reason = "rate_limited" if isinstance(exc, RateLimited) else "overloaded"
        if reason:
            self.metrics.inc_rejected(reason)

    def health(self) -> dict[str, Any]:
        """Liveness payload with configuration and live counters, secrets excluded."""
        smtp = self.settings.smtp
        pool_info: dict[str, Any]
        if isinstance(self.transport, SMTPPool):
            pool_info = self.transport.snapshot()
        else:
            pool_info = {
                "maxConnections": smtp.max_connections,
                "maxMessages": smtp.max_messages,
                "rateLimit": smtp.rate_limit,
                "rateDelta": smtp.rate_delta,
            }
        policy = self.delivery.policy
        return {
            "status": "OK",
            "timestamp": self._utc_now_iso(),
            "smtp": {
                "host": smtp.host,
                "port": smtp.port,
                "secure": smtp.secure,
                "user": smtp.user,
                "pool": pool_info,
            },
            "security": {
                "apiKeyRequired": True,
                "rateLimit": self.rate_limiter.snapshot(),
                "admission": self.admission.snapshot(),
                "retry": {
                    "attempts": policy.attempts,
                    "delaySeconds": policy.delay,
                    "backoff": policy.backoff,
                },
            },
        }

    # ------------------------------------------------------------------ lifecycle
    def start(self) -> None:
        """Start the background sweep of expired rate-limit windows."""
        if self._task_cleanup is not None:
            return
        self._stop = asyncio.Event()
        self._task_cleanup = asyncio.create_task(self._cleanup_loop(), name="rate-limit-cleanup-loop")

    async def _cleanup_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.cleanup_interval)
            except asyncio.TimeoutError:
                removed = self.rate_limiter.prune()
                if removed:
                    self.logger.debug("Pruned %d expired rate-limit windows", removed)

    async def close(self) -> None:
        """Stop background tasks and close the transport."""
        if self._task_cleanup is not None:
            self._stop.set()
            await self._task_cleanup
            self._task_cleanup = None
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()
