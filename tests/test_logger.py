import logging

from otp_mail_relay.logger import LOG_FORMAT, configure_logging, get_logger


def test_get_logger_reuses_existing_logger():
    logger = get_logger("TestLogger")
    handler_count = len(logger.handlers)

    same_logger = get_logger("TestLogger")
    assert logger is same_logger
    assert len(same_logger.handlers) == handler_count


def test_configure_logging_resolves_level_names(monkeypatch):
    calls = []
    monkeypatch.setattr("otp_mail_relay.logger.logging.basicConfig", lambda **kwargs: calls.append(kwargs))

    configure_logging("warning")
    configure_logging("not-a-level")

    assert [c["level"] for c in calls] == [logging.WARNING, logging.INFO]
    assert all(c["force"] is True and c["format"] == LOG_FORMAT for c in calls)
