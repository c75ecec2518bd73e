from otp_mail_relay.prometheus import RelayMetrics


def test_relay_metrics_counters_and_gauge():
    metrics = RelayMetrics()

    metrics.inc_sent()
    metrics.inc_retry()
    metrics.inc_delivery_error()
    metrics.inc_rejected("rate_limited")
    metrics.inc_rejected("something-else")
    metrics.set_in_flight(3)

    output = metrics.generate_latest()
    assert b"omr_sent_total 1.0" in output
    assert b'omr_rejected_total{reason="rate_limited"} 1.0' in output
    assert b'omr_rejected_total{reason="other"} 1.0' in output
    assert b"omr_in_flight_requests 3.0" in output


def test_separate_instances_use_separate_registries():
    first = RelayMetrics()
    second = RelayMetrics()
    first.inc_sent()
    assert b"omr_sent_total 0.0" in second.generate_latest()
