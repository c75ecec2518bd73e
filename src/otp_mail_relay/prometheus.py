# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the relay.

All metrics use the ``omr_`` prefix.

Metrics exposed:
    - ``omr_sent_total``: Counter of delivered emails.
    - ``omr_delivery_errors_total``: Counter of deliveries that exhausted retries.
    - ``omr_retries_total``: Counter of retried send attempts.
    - ``omr_rejected_total``: Counter of rejected requests by reason.
    - ``omr_in_flight_requests``: Gauge of requests currently admitted.

Example:
    Accessing metrics via the REST API::

        GET /metrics

    Returns Prometheus text format suitable for scraping.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

REJECTION_REASONS = ("unauthorized", "bad_request", "rate_limited", "overloaded", "timeout")


class RelayMetrics:
    """Prometheus metrics collector for the relay.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
        sent: Counter tracking delivered emails.
        delivery_errors: Counter tracking deliveries that failed for good.
        retries: Counter tracking retried send attempts.
        rejected: Counter tracking rejected requests, labeled by reason.
        in_flight: Gauge showing requests currently admitted.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. If not provided,
                a new registry is created.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter(
            "omr_sent_total",
            "Total delivered emails",
            registry=self.registry,
        )
        self.delivery_errors = Counter(
            "omr_delivery_errors_total",
            "Total deliveries that exhausted retries",
            registry=self.registry,
        )
        self.retries = Counter(
            "omr_retries_total",
            "Total retried send attempts",
            registry=self.registry,
        )
        self.rejected = Counter(
            "omr_rejected_total",
            "Total rejected requests",
            ["reason"],
            registry=self.registry,
        )
        self.in_flight = Gauge(
            "omr_in_flight_requests",
            "Requests currently in flight",
            registry=self.registry,
        )

    def inc_sent(self) -> None:
        self.sent.inc()

    def inc_delivery_error(self) -> None:
        self.delivery_errors.inc()

    def inc_retry(self) -> None:
        self.retries.inc()

    def inc_rejected(self, reason: str) -> None:
        """Increment the rejection counter.

        Args:
            reason: One of :data:`REJECTION_REASONS`; anything else is
                recorded as ``"other"``.
        """
        self.rejected.labels(reason=reason if reason in REJECTION_REASONS else "other").inc()

    def set_in_flight(self, value: int) -> None:
        self.in_flight.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
