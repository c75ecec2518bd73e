# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Concurrency admission control with per-request deadlines.

The :class:`AdmissionController` caps the number of requests processed at
the same time across the whole process and bounds the wall-clock duration
of each admitted request. It is independent from the identity rate limiter:
the limiter bounds request rate per caller, this bounds system-wide
concurrency.

Every admitted request holds an :class:`AdmissionTicket`. The ticket is the
single owner of the slot and gives it back exactly once, whichever of the
success, failure or timeout paths finishes first.

Example:
    Running a handler under admission control::

        controller = AdmissionController(max_concurrent=10, request_timeout=30)
        result = await controller.run(lambda: relay.deliver(request))
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import Overloaded, RequestTimeout
from .logger import get_logger

T = TypeVar("T")

logger = get_logger("Admission")


class AdmissionTicket:
    """Slot held by one admitted request."""

    def __init__(self, controller: AdmissionController):
        self._controller = controller
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """Give the slot back.

        Returns:
            True for the call that actually released the slot, False for
            any later call.
        """
        return self._controller._release(self)


class AdmissionController:
    """Process-wide in-flight counter with timeout enforcement.

    The counter is only touched under ``_lock``; the lock is never held
    while awaiting, so admission checks are synchronous and atomic.

    Attributes:
        max_concurrent: Number of requests allowed in flight.
        request_timeout: Wall-clock budget of one request in seconds. A
            value of zero or less disables the deadline.
        throttle_enabled: Whether admitted requests wait ``throttle_delay``
            before the handler starts.
        throttle_delay: Delay in seconds, counted inside the timeout budget.
        overload_retry_after: Retry hint in seconds sent with ``Overloaded``.
    """

    def __init__(
        self,
        max_concurrent: int = 10,
        request_timeout: float = 30.0,
        *,
        throttle_enabled: bool = False,
        throttle_delay: float = 0.0,
        overload_retry_after: int = 5,
    ):
        self.max_concurrent = max(1, int(max_concurrent))
        self.request_timeout = float(request_timeout)
        self.throttle_enabled = bool(throttle_enabled)
        self.throttle_delay = max(0.0, float(throttle_delay))
        self.overload_retry_after = int(overload_retry_after)
        self._in_flight = 0
        self._lock = threading.Lock()

    @property
    def in_flight(self) -> int:
        with self._lock:
            return self._in_flight

    def acquire(self) -> AdmissionTicket:
        """Admit one request or reject it immediately.

        Raises:
            Overloaded: If ``max_concurrent`` requests are already in flight.
                The counter is left untouched.
        """
        with self._lock:
            if self._in_flight >= self.max_concurrent:
                raise Overloaded(self.overload_retry_after)
            self._in_flight += 1
        return AdmissionTicket(self)

    def _release(self, ticket: AdmissionTicket) -> bool:
        with self._lock:
            if ticket._released:
                return False
            ticket._released = True
            self._in_flight -= 1
            return True

    async def run(self, handler: Callable[[], Awaitable[T]]) -> T:
        """Run ``handler`` inside an admission slot and a deadline.

        The handler runs in the current task. When the deadline expires
        the handler is cancelled at its current suspension point, so it
        can never produce a response after the timeout.

        Args:
            handler: Zero-argument callable returning the awaitable to run.

        Returns:
            Whatever the handler returns.

        Raises:
            Overloaded: If no slot is available.
            RequestTimeout: If the deadline expires first.
        """
        ticket = self.acquire()
        timeout = self.request_timeout if self.request_timeout > 0 else None
        try:
            async with asyncio.timeout(timeout) as scope:
                if self.throttle_enabled and self.throttle_delay:
                    await asyncio.sleep(self.throttle_delay)
                return await handler()
        except TimeoutError:
            if not scope.expired():
                raise
            logger.warning("Request timed out after %gs", self.request_timeout)
            raise RequestTimeout(self.request_timeout) from None
        finally:
            ticket.release()

    def snapshot(self) -> dict[str, object]:
        return {
            "maxConcurrent": self.max_concurrent,
            "inFlight": self.in_flight,
            "requestTimeoutSeconds": self.request_timeout,
            "throttle": {
                "enabled": self.throttle_enabled,
                "delaySeconds": self.throttle_delay,
            },
        }
