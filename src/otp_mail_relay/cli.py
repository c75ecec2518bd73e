"""Command-line interface for the verification mail relay.

Usage:
    otp-mail-relay serve                      # Run the HTTP relay
    otp-mail-relay config                     # Show the effective configuration
    otp-mail-relay send-test user@example.com # Send one code through the upstream relay

Every command reads the same configuration as the server: ``--config``
(or ``$OMR_CONFIG``, default ``config.ini``) with ``OMR_*`` environment
variables as fallbacks.
"""

from __future__ import annotations

import asyncio
import secrets
import sys
from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import RelaySettings, load_settings
from .errors import ConfigurationError, DeliveryFailed
from .logger import configure_logging
from .message import DeliveryRequest
from .relay import VerificationRelay

console = Console()
err_console = Console(stderr=True)

MASK = "********"


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def _load(config_path: Optional[str], validate: bool = True) -> RelaySettings:
    try:
        return load_settings(config_path, validate=validate)
    except (ConfigurationError, ValueError) as exc:
        print_error(str(exc))
        sys.exit(1)


def _mask(value: Optional[str]) -> str:
    return MASK if value else "[red]unset[/red]"


def _settings_rows(settings: RelaySettings) -> list[tuple[str, str]]:
    smtp = settings.smtp
    return [
        ("server.host", settings.http_host),
        ("server.port", str(settings.http_port)),
        ("server.api_key", _mask(settings.api_key)),
        ("server.cors_origins", ", ".join(settings.cors_origins)),
        ("smtp.host", smtp.host or "[red]unset[/red]"),
        ("smtp.port", str(smtp.port)),
        ("smtp.secure", str(smtp.secure).lower()),
        ("smtp.user", smtp.user or "[red]unset[/red]"),
        ("smtp.password", _mask(smtp.password)),
        ("smtp.max_connections", str(smtp.max_connections)),
        ("smtp.max_messages", str(smtp.max_messages)),
        ("smtp.rate_limit", f"{smtp.rate_limit} / {smtp.rate_delta:g}s" if smtp.rate_limit else "off"),
        ("rate_limit.window_seconds", f"{settings.rate_limit.window_seconds:g}"),
        ("rate_limit.max_requests", str(settings.rate_limit.max_requests)),
        ("admission.max_concurrent", str(settings.admission.max_concurrent)),
        ("admission.request_timeout_seconds", f"{settings.admission.request_timeout:g}"),
        (
            "admission.throttle",
            f"{settings.admission.throttle_delay:g}s" if settings.admission.throttle_enabled else "off",
        ),
        ("retry.attempts", str(settings.retry.attempts)),
        ("retry.delay_seconds", f"{settings.retry.delay:g}"),
        ("retry.backoff", settings.retry.backoff),
        ("logging.level", settings.log_level),
    ]


@click.group()
@click.version_option(__version__)
def main() -> None:
    """otp-mail-relay CLI - Relay one-time verification codes by email."""


@main.command("serve")
@click.option("--config", "config_path", default=None, help="Path to config.ini.")
@click.option("--host", "-h", default=None, help="Host to bind to (default: from config).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: from config).")
def serve(config_path: Optional[str], host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP relay with uvicorn."""
    import uvicorn

    from .server import create_server_app

    settings = _load(config_path)
    configure_logging(settings.log_level)
    app = create_server_app(settings)
    uvicorn.run(
        app,
        host=host or settings.http_host,
        port=port or settings.http_port,
        log_level=settings.log_level.lower(),
    )


@main.command("config")
@click.option("--config", "config_path", default=None, help="Path to config.ini.")
def show_config(config_path: Optional[str]) -> None:
    """Show the effective configuration with secrets masked."""
    settings = _load(config_path, validate=False)
    table = Table(title="OTP Mail Relay Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value")
    for name, value in _settings_rows(settings):
        table.add_row(name, value)
    console.print(table)
    try:
        settings.validate()
    except (ConfigurationError, ValueError) as exc:
        print_error(str(exc))
        sys.exit(1)


@main.command("send-test")
@click.argument("recipient")
@click.option("--config", "config_path", default=None, help="Path to config.ini.")
@click.option("--subject", default="Verification code", show_default=True, help="Subject line.")
@click.option("--code", default=None, help="Code to send (default: random 6 digits).")
@click.option("--from-name", default=None, help="Sender display name.")
def send_test(
    recipient: str,
    config_path: Optional[str],
    subject: str,
    code: Optional[str],
    from_name: Optional[str],
) -> None:
    """Send one verification email through the configured upstream relay."""
    settings = _load(config_path)
    configure_logging(settings.log_level)
    code = code or f"{secrets.randbelow(1_000_000):06d}"
    request = DeliveryRequest(to=recipient, subject=subject, code=code, from_name=from_name)

    async def _send():
        relay = VerificationRelay(settings)
        try:
            return await relay.deliver(request)
        finally:
            await relay.close()

    try:
        receipt = asyncio.run(_send())
    except DeliveryFailed as exc:
        print_error(f"Delivery failed after {exc.attempts} attempts: {exc.message}")
        sys.exit(1)
    print_success(f"Code {code} sent to {recipient} (attempts: {receipt.attempts})")


if __name__ == "__main__":
    main()
