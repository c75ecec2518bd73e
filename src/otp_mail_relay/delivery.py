# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery client: one outbound send wrapped in a bounded retry loop.

Every transport failure is treated alike. A delivery makes at most
``attempts + 1`` sends, waiting between them according to the
:class:`RetryPolicy`, and either returns a :class:`DeliveryReceipt` or
raises :class:`~otp_mail_relay.errors.DeliveryFailed` with the last cause.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

from .config import RetrySettings
from .errors import DeliveryFailed
from .logger import get_logger
from .prometheus import RelayMetrics


class Transport(Protocol):
    async def send_message(self, message: EmailMessage) -> str: ...


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration of the delivery client.

    Attributes:
        attempts: Additional attempts after the first one.
        delay: Seconds between attempts (base delay for exponential backoff).
        backoff: ``"fixed"`` or ``"exponential"``.
        max_delay: Upper bound of a single exponential delay.

    Example:
        >>> RetryPolicy(attempts=3, delay=1.0, backoff="exponential").calculate_delay(2)
        4.0
    """

    attempts: int = 2
    delay: float = 1.0
    backoff: str = "fixed"
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            attempts=max(0, settings.attempts),
            delay=max(0.0, settings.delay),
            backoff=settings.backoff,
            max_delay=settings.max_delay,
        )

    @property
    def total_attempts(self) -> int:
        return self.attempts + 1

    def calculate_delay(self, retry_index: int) -> float:
        """Delay before retry number ``retry_index`` (0-indexed)."""
        if self.backoff == "exponential":
            return min(self.delay * (2**retry_index), self.max_delay)
        return self.delay


@dataclass(frozen=True)
class DeliveryReceipt:
    attempts: int
    response: str


class DeliveryClient:
    """Send messages through a transport, retrying failed attempts.

    Attributes:
        transport: Object exposing ``async send_message(message)``.
        policy: The :class:`RetryPolicy` in force.
        metrics: Metrics collector updated on sends, retries and failures.
    """

    def __init__(
        self,
        transport: Transport,
        policy: RetryPolicy | None = None,
        *,
        metrics: RelayMetrics | None = None,
        logger=None,
    ):
        self.transport = transport
        self.policy = policy or RetryPolicy()
        self.metrics = metrics or RelayMetrics()
        self.logger = logger or get_logger("Delivery")

    async def deliver(self, message: EmailMessage) -> DeliveryReceipt:
        """Deliver ``message``, retrying up to ``policy.attempts`` times.

        Raises:
            DeliveryFailed: If every attempt failed; carries the last
                exception and the number of attempts made.
        """
        recipient = message.get("To", "-")
        total = self.policy.total_attempts
        last_error: Exception | None = None
        for attempt in range(1, total + 1):
            try:
                response = await self.transport.send_message(message)
            except Exception as exc:
                last_error = exc
                if attempt == total:
                    break
                delay = self.policy.calculate_delay(attempt - 1)
                self.metrics.inc_retry()
                self.logger.warning(
                    "Delivery to %s failed (attempt %d/%d): %s - retrying in %gs",
                    recipient,
                    attempt,
                    total,
                    exc,
                    delay,
                )
                await asyncio.sleep(delay)
            else:
                self.metrics.inc_sent()
                self.logger.info("Email sent to %s (attempts=%d)", recipient, attempt)
                return DeliveryReceipt(attempts=attempt, response=str(response))

        self.metrics.inc_delivery_error()
        self.logger.error("Delivery to %s failed after %d attempts: %s", recipient, total, last_error)
        raise DeliveryFailed(last_error, attempts=total) from last_error
