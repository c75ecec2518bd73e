import sys

import uvicorn

from otp_mail_relay.api import create_app
from otp_mail_relay.config import load_settings
from otp_mail_relay.errors import ConfigurationError
from otp_mail_relay.logger import configure_logging, get_logger
from otp_mail_relay.relay import VerificationRelay


def run(config_path: str | None = None) -> None:
    """Load settings and serve the relay, exiting with status 1 on bad configuration."""
    try:
        settings = load_settings(config_path)
    except (ConfigurationError, ValueError) as exc:
        configure_logging("INFO")
        get_logger().error("Invalid configuration: %s", exc)
        sys.exit(1)

    # Configure logging before the relay creates its loggers
    configure_logging(settings.log_level)

    app = create_app(VerificationRelay(settings))
    uvicorn.run(app, host=settings.http_host, port=settings.http_port)


if __name__ == "__main__":
    run()
