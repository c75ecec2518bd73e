# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

Usage:
    uvicorn otp_mail_relay.server:create_server_app --factory --host 0.0.0.0 --port 3000

Settings are read by :func:`otp_mail_relay.config.load_settings` from
``$OMR_CONFIG`` (default ``config.ini``) and ``OMR_*`` environment variables.
The factory refuses to build the application when the credential or the
upstream SMTP host, user or password are missing.
"""

from __future__ import annotations

from fastapi import FastAPI

from .api import create_app
from .config import RelaySettings, load_settings
from .relay import VerificationRelay


def create_server_app(settings: RelaySettings | None = None) -> FastAPI:
    """Build the fully wired application from configuration."""
    settings = settings or load_settings()
    return create_app(VerificationRelay(settings.validate()))
