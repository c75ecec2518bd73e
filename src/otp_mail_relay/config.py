# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loading for the verification mail relay.

Settings are read from an INI file (default: ``config.ini``) with
environment variables as fallbacks. Values are loaded once at startup into
frozen dataclasses and never change for the lifetime of the process.

Environment variables (all prefixed with OMR_):
  OMR_CONFIG - Path to config.ini file (default: config.ini)
  OMR_LOG_LEVEL - Logging level (default: INFO)
  OMR_HOST / OMR_PORT - Bind address (default: 0.0.0.0:3000)
  OMR_API_KEY - Shared secret expected in the X-API-Key header (required)
  OMR_CORS_ORIGINS - Comma separated allowed origins (default: *)
  OMR_SMTP_HOST / OMR_SMTP_PORT / OMR_SMTP_SECURE - Upstream relay (host required)
  OMR_SMTP_USER / OMR_SMTP_PASSWORD - Upstream credentials (required)
  OMR_SMTP_MAX_CONNECTIONS - Pool size (default: 5)
  OMR_SMTP_MAX_MESSAGES - Messages per pooled connection (default: 100)
  OMR_SMTP_RATE_LIMIT / OMR_SMTP_RATE_DELTA - Outbound messages per delta seconds
  OMR_SMTP_SEND_TIMEOUT - Timeout of a single send in seconds (default: 30)
  OMR_RATE_LIMIT_WINDOW - Rate limit window in seconds (default: 300)
  OMR_RATE_LIMIT_MAX - Requests allowed per window and identity (default: 3)
  OMR_MAX_CONCURRENT - Requests allowed in flight (default: 10)
  OMR_REQUEST_TIMEOUT - Request timeout in seconds (default: 30)
  OMR_THROTTLE_ENABLED / OMR_THROTTLE_DELAY - Optional fixed delay before handling
  OMR_RETRY_ATTEMPTS / OMR_RETRY_DELAY / OMR_RETRY_BACKOFF - Delivery retry policy
  OMR_MAIL_FROM_NAME / OMR_MAIL_BRAND - Sender display name and brand in the body

Config file sections/keys:
  [server] host, port, api_key, cors_origins
  [smtp] host, port, secure, user, password, max_connections, max_messages,
         rate_limit, rate_delta, send_timeout, ttl
  [rate_limit] window_seconds, max_requests, max_keys
  [admission] max_concurrent, request_timeout_seconds, throttle_enabled,
              throttle_delay_seconds, overload_retry_after
  [retry] attempts, delay_seconds, backoff, max_delay_seconds
  [mail] from_name, brand_name, code_validity_minutes
  [logging] level
"""

from __future__ import annotations

import configparser
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError
from .logger import get_logger

logger = get_logger("Config")

ENV_PREFIX = "OMR_"


@dataclass(frozen=True)
class SMTPSettings:
    """Upstream SMTP relay and connection pool settings."""

    host: str | None = None
    port: int = 587
    secure: bool = False
    user: str | None = None
    password: str | None = field(default=None, repr=False)
    max_connections: int = 5
    max_messages: int = 100
    rate_limit: int = 0
    rate_delta: float = 1.0
    send_timeout: float = 30.0
    ttl: float = 300.0


@dataclass(frozen=True)
class RateLimitSettings:
    window_seconds: float = 300.0
    max_requests: int = 3
    max_keys: int = 10000


@dataclass(frozen=True)
class AdmissionSettings:
    max_concurrent: int = 10
    request_timeout: float = 30.0
    throttle_enabled: bool = False
    throttle_delay: float = 0.1
    overload_retry_after: int = 5


@dataclass(frozen=True)
class RetrySettings:
    attempts: int = 2
    delay: float = 1.0
    backoff: str = "fixed"
    max_delay: float = 30.0


@dataclass(frozen=True)
class MailSettings:
    from_name: str | None = None
    brand_name: str = "MedsTrackingApp"
    code_validity_minutes: int = 5


@dataclass(frozen=True)
class RelaySettings:
    """Complete, immutable relay configuration.

    Attributes:
        http_host: Address the HTTP server binds to.
        http_port: Port the HTTP server listens on.
        api_key: Shared secret expected in the ``X-API-Key`` header.
        cors_origins: Origins allowed by the CORS middleware.
        log_level: Name of the root logging level.
    """

    http_host: str = "0.0.0.0"
    http_port: int = 3000
    api_key: str | None = field(default=None, repr=False)
    cors_origins: tuple[str, ...] = ("*",)
    log_level: str = "INFO"
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    admission: AdmissionSettings = field(default_factory=AdmissionSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    mail: MailSettings = field(default_factory=MailSettings)

    def validate(self) -> RelaySettings:
        """Check mandatory values and return ``self``.

        Raises:
            ConfigurationError: If the credential or the SMTP host, user or
                password are unset.
        """
        required = {
            "api_key": self.api_key,
            "smtp.host": self.smtp.host,
            "smtp.user": self.smtp.user,
            "smtp.password": self.smtp.password,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigurationError(missing)
        if self.retry.backoff not in ("fixed", "exponential"):
            raise ValueError(f"Unknown retry backoff: {self.retry.backoff!r}")
        return self


def _split_origins(value: str | None) -> tuple[str, ...]:
    if not value:
        return ("*",)
    origins = tuple(part.strip() for part in value.split(",") if part.strip())
    return origins or ("*",)


def load_settings(
    config_path: str | os.PathLike[str] | None = None,
    environ: Mapping[str, str] | None = None,
    *,
    validate: bool = True,
) -> RelaySettings:
    """Load configuration from an INI file with environment variables as fallbacks.

    Values from the INI file win over environment variables, which win over
    the dataclass defaults.

    Args:
        config_path: INI file to read. Defaults to ``$OMR_CONFIG`` or
            ``config.ini``; a missing file is not an error.
        environ: Environment mapping, ``os.environ`` when omitted.
        validate: Whether to enforce mandatory settings.

    Returns:
        The loaded :class:`RelaySettings`.

    Raises:
        ConfigurationError: If ``validate`` is true and mandatory values
            are missing.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get(f"{ENV_PREFIX}CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
        logger.debug("Loaded configuration file %s", path)

    def get(section: str, option: str, env_name: str) -> str | None:
        if parser.has_option(section, option):
            value = parser.get(section, option)
        else:
            value = env.get(f"{ENV_PREFIX}{env_name}")
        if value is None:
            return None
        value = value.strip()
        return value or None

    def get_str(section: str, option: str, env_name: str, default: str | None = None) -> str | None:
        value = get(section, option, env_name)
        return default if value is None else value

    def get_int(section: str, option: str, env_name: str, default: int) -> int:
        value = get(section, option, env_name)
        return default if value is None else int(value)

    def get_float(section: str, option: str, env_name: str, default: float) -> float:
        value = get(section, option, env_name)
        return default if value is None else float(value)

    def get_bool(section: str, option: str, env_name: str, default: bool) -> bool:
        value = get(section, option, env_name)
        if value is None:
            return default
        normalized = value.lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    smtp_defaults = SMTPSettings()
    smtp = SMTPSettings(
        host=get_str("smtp", "host", "SMTP_HOST"),
        port=get_int("smtp", "port", "SMTP_PORT", smtp_defaults.port),
        secure=get_bool("smtp", "secure", "SMTP_SECURE", smtp_defaults.secure),
        user=get_str("smtp", "user", "SMTP_USER"),
        password=get_str("smtp", "password", "SMTP_PASSWORD"),
        max_connections=get_int("smtp", "max_connections", "SMTP_MAX_CONNECTIONS", smtp_defaults.max_connections),
        max_messages=get_int("smtp", "max_messages", "SMTP_MAX_MESSAGES", smtp_defaults.max_messages),
        rate_limit=get_int("smtp", "rate_limit", "SMTP_RATE_LIMIT", smtp_defaults.rate_limit),
        rate_delta=get_float("smtp", "rate_delta", "SMTP_RATE_DELTA", smtp_defaults.rate_delta),
        send_timeout=get_float("smtp", "send_timeout", "SMTP_SEND_TIMEOUT", smtp_defaults.send_timeout),
        ttl=get_float("smtp", "ttl", "SMTP_TTL", smtp_defaults.ttl),
    )

    rl_defaults = RateLimitSettings()
    rate_limit = RateLimitSettings(
        window_seconds=get_float("rate_limit", "window_seconds", "RATE_LIMIT_WINDOW", rl_defaults.window_seconds),
        max_requests=get_int("rate_limit", "max_requests", "RATE_LIMIT_MAX", rl_defaults.max_requests),
        max_keys=get_int("rate_limit", "max_keys", "RATE_LIMIT_MAX_KEYS", rl_defaults.max_keys),
    )

    adm_defaults = AdmissionSettings()
    admission = AdmissionSettings(
        max_concurrent=get_int("admission", "max_concurrent", "MAX_CONCURRENT", adm_defaults.max_concurrent),
        request_timeout=get_float(
            "admission", "request_timeout_seconds", "REQUEST_TIMEOUT", adm_defaults.request_timeout
        ),
        throttle_enabled=get_bool("admission", "throttle_enabled", "THROTTLE_ENABLED", adm_defaults.throttle_enabled),
        throttle_delay=get_float("admission", "throttle_delay_seconds", "THROTTLE_DELAY", adm_defaults.throttle_delay),
        overload_retry_after=get_int(
            "admission", "overload_retry_after", "OVERLOAD_RETRY_AFTER", adm_defaults.overload_retry_after
        ),
    )

    retry_defaults = RetrySettings()
    retry = RetrySettings(
        attempts=get_int("retry", "attempts", "RETRY_ATTEMPTS", retry_defaults.attempts),
        delay=get_float("retry", "delay_seconds", "RETRY_DELAY", retry_defaults.delay),
        backoff=(get_str("retry", "backoff", "RETRY_BACKOFF", retry_defaults.backoff) or "fixed").lower(),
        max_delay=get_float("retry", "max_delay_seconds", "RETRY_MAX_DELAY", retry_defaults.max_delay),
    )

    mail_defaults = MailSettings()
    mail = MailSettings(
        from_name=get_str("mail", "from_name", "MAIL_FROM_NAME"),
        brand_name=get_str("mail", "brand_name", "MAIL_BRAND", mail_defaults.brand_name) or mail_defaults.brand_name,
        code_validity_minutes=get_int(
            "mail", "code_validity_minutes", "CODE_VALIDITY_MINUTES", mail_defaults.code_validity_minutes
        ),
    )

    settings = RelaySettings(
        http_host=get_str("server", "host", "HOST", "0.0.0.0") or "0.0.0.0",
        http_port=get_int("server", "port", "PORT", 3000),
        api_key=get_str("server", "api_key", "API_KEY"),
        cors_origins=_split_origins(get_str("server", "cors_origins", "CORS_ORIGINS")),
        log_level=(get_str("logging", "level", "LOG_LEVEL", "INFO") or "INFO").upper(),
        smtp=smtp,
        rate_limit=rate_limit,
        admission=admission,
        retry=retry,
        mail=mail,
    )
    if validate:
        settings.validate()
    return settings
