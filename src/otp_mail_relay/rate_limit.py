# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Fixed-window rate limiter keyed by client identity.

The identity of a request is the pair (client network address, recipient
address). Each identity may perform at most ``max_requests`` requests per
``window_seconds``; the window starts with the first request of the key and
is reset lazily on the first access after it has elapsed.

The table lives in memory and is bounded: once it holds more than
``max_keys`` identities the least recently used 20% are evicted.

Example:
    Checking a request::

        limiter = IdentityRateLimiter(window_seconds=300, max_requests=3)
        decision = limiter.hit(rate_limit_key("203.0.113.7", "user@example.com"))
        if not decision.allowed:
            raise RateLimited(decision.retry_after)
"""

from __future__ import annotations

import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass

UNKNOWN_RECIPIENT = "unknown"


def rate_limit_key(client_address: str | None, recipient: str | None) -> str:
    """Build the rate-limit key of a request.

    A missing recipient collapses into the literal ``"unknown"`` bucket.
    """
    return f"{client_address or UNKNOWN_RECIPIENT}:{recipient or UNKNOWN_RECIPIENT}"


@dataclass
class RateLimitWindow:
    """Counter state of one identity."""

    count: int
    window_start: float


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    retry_after: int | None = None


class IdentityRateLimiter:
    """In-memory fixed-window limiter with LRU-bounded key table.

    All reads and writes of the window table happen under a lock that is
    never held across an ``await``, so checks stay atomic whether they are
    called from the event loop or from a worker thread.

    Attributes:
        window_seconds: Length of the window.
        max_requests: Requests allowed per window and key.
        max_keys: Upper bound of tracked identities.
    """

    def __init__(self, window_seconds: float = 300.0, max_requests: int = 3, max_keys: int = 10000):
        self.window_seconds = float(window_seconds)
        self.max_requests = max(1, int(max_requests))
        self.max_keys = max(1, int(max_keys))
        self._windows: OrderedDict[str, RateLimitWindow] = OrderedDict()
        self._lock = threading.Lock()

    def hit(self, key: str) -> RateLimitDecision:
        """Count one request for ``key`` if the key is under its limit.

        Args:
            key: Identity built by :func:`rate_limit_key`.

        Returns:
            A :class:`RateLimitDecision`. When ``allowed`` is false the
            counter was not incremented and ``retry_after`` holds the
            seconds left in the current window.
        """
        with self._lock:
            now = time.monotonic()
            window = self._windows.get(key)
            if window is None or now - window.window_start >= self.window_seconds:
                window = RateLimitWindow(count=0, window_start=now)
                self._windows[key] = window
            self._windows.move_to_end(key)
            self._enforce_key_limit()

            if window.count >= self.max_requests:
                remaining_window = self.window_seconds - (now - window.window_start)
                return RateLimitDecision(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    retry_after=max(1, math.ceil(remaining_window)),
                )

            window.count += 1
            return RateLimitDecision(
                allowed=True,
                limit=self.max_requests,
                remaining=self.max_requests - window.count,
            )

    def _enforce_key_limit(self) -> None:
        """Evict the least recently used keys when the table overflows."""
        if len(self._windows) <= self.max_keys:
            return
        remove_count = max(1, int(self.max_keys * 0.2))
        for _ in range(min(remove_count, len(self._windows) - 1)):
            self._windows.popitem(last=False)

    def prune(self) -> int:
        """Drop every expired window and return how many were removed."""
        with self._lock:
            now = time.monotonic()
            expired = [
                key for key, window in self._windows.items()
                if now - window.window_start >= self.window_seconds
            ]
            for key in expired:
                del self._windows[key]
            return len(expired)

    def count(self, key: str) -> int:
        """Requests counted for ``key`` in its current window."""
        with self._lock:
            window = self._windows.get(key)
            if window is None or time.monotonic() - window.window_start >= self.window_seconds:
                return 0
            return window.count

    def snapshot(self) -> dict[str, float | int]:
        with self._lock:
            tracked = len(self._windows)
        return {
            "windowSeconds": self.window_seconds,
            "maxRequests": self.max_requests,
            "trackedKeys": tracked,
        }
