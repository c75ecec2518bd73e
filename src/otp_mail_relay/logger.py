"""Logging utilities for the verification mail relay.

Modules obtain loggers through :func:`get_logger`. Handlers, level and
format are configured once by the process entry point through
:func:`configure_logging`, which avoids duplicate handlers when the
application is reloaded.

Example:
    Typical usage in a module::

        from otp_mail_relay.logger import get_logger

        logger = get_logger("Delivery")
        logger.info("Email sent")
"""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "OtpMailRelay") -> logging.Logger:
    """Retrieve a logger instance.

    The logger is not configured here; that responsibility lies with
    the application entry point.

    Args:
        name: The logger name. Defaults to "OtpMailRelay".

    Returns:
        A ``logging.Logger`` instance bound to the given name.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for the whole process.

    Unknown level names fall back to ``INFO``.

    Args:
        level: Logging level name, case-insensitive.
    """
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,
    )
