"""FastAPI application factory and HTTP schemas for the verification mail relay.

This module provides the REST interface of the relay:

- ``POST /send-email``: deliver a verification code, protected by the
  ``X-API-Key`` header, rate limited and admission controlled
- ``GET /health``: liveness, configuration and live counters, no authentication
- ``GET /metrics``: Prometheus metrics, protected by the ``X-API-Key`` header

Every :class:`~otp_mail_relay.errors.RelayError` raised while handling a
request is turned into a single JSON response by one exception handler;
anything else is answered with a JSON ``500``.

Example:
    Creating and running the API application::

        from otp_mail_relay.api import create_app
        from otp_mail_relay.config import load_settings
        from otp_mail_relay.relay import VerificationRelay

        app = create_app(VerificationRelay(load_settings()))

        # Run with uvicorn
        uvicorn.run(app, host="0.0.0.0", port=3000)
"""

import json
import secrets
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, Optional, Union

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import BadRequest, ConfigurationError, RelayError, Unauthorized
from .logger import get_logger
from .relay import VerificationRelay

logger = get_logger("API")

API_KEY_HEADER_NAME = "X-API-Key"
api_key_scheme = APIKeyHeader(name=API_KEY_HEADER_NAME, auto_error=False)


def get_relay(request: Request) -> VerificationRelay:
    return request.app.state.relay


async def require_api_key(request: Request, api_key: Optional[str] = Depends(api_key_scheme)) -> None:
    """Validate the credential carried in the ``X-API-Key`` header.

    A missing or blank header raises ``Unauthorized(MissingCredential)``;
    any other value that differs from the configured key raises
    ``Unauthorized(InvalidCredential)``. The comparison is constant-time.
    """
    expected: str = request.app.state.api_key
    if not api_key or not api_key.strip():
        raise Unauthorized(Unauthorized.MISSING)
    if not secrets.compare_digest(api_key.encode("utf-8"), expected.encode("utf-8")):
        raise Unauthorized(Unauthorized.INVALID)


auth_dependency = Depends(require_api_key)


class SendEmailPayload(BaseModel):
    """Body accepted by ``POST /send-email``.

    Fields are optional at the schema level; presence is checked by the
    relay so that missing fields produce a ``400`` with their names.
    """
    model_config = ConfigDict(populate_by_name=True)
    to: Optional[str] = None
    from_name: Optional[str] = Field(default=None, alias="from")
    subject: Optional[str] = None
    code: Optional[Union[str, int]] = None


class SendEmailResponse(BaseModel):
    success: bool
    message: str


async def _read_payload(request: Request) -> SendEmailPayload:
    body = await request.body()
    if not body.strip():
        return SendEmailPayload()
    try:
        return SendEmailPayload.model_validate(json.loads(body))
    except (ValueError, ValidationError) as exc:
        logger.warning("Invalid body on %s %s: %s", request.method, request.url.path, exc)
        raise BadRequest(message="Invalid JSON body") from exc


def _client_address(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def create_app(
    relay: VerificationRelay,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    relay:
        The :class:`~otp_mail_relay.relay.VerificationRelay` owning all
        shared state of the service.
    lifespan:
        Optional lifespan context manager. The default one logs the
        effective upstream settings and starts the relay housekeeping at
        startup, then stops it and closes the SMTP pool at shutdown.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.

    Raises
    ------
    ConfigurationError
        If the relay settings carry no credential.
    """
    settings = relay.settings
    if not settings.api_key:
        raise ConfigurationError(["api_key"])

    if lifespan is None:
        @asynccontextmanager
        async def lifespan(app: FastAPI):
            logger.info("Email relay listening on port %s", settings.http_port)
            logger.info("SMTP: %s:%s", settings.smtp.host, settings.smtp.port)
            logger.info("User: %s", settings.smtp.user)
            relay.start()
            yield
            await relay.close()

    api = FastAPI(title="OTP Mail Relay", lifespan=lifespan)
    api.state.relay = relay
    api.state.api_key = settings.api_key
    api.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @api.exception_handler(RelayError)
    async def relay_error_handler(request: Request, exc: RelayError):
        """Render a relay error as its JSON body and status code."""
        get_relay(request).record_rejection(exc)
        headers = None
        if exc.retry_after is not None:
            headers = {"Retry-After": str(exc.retry_after)}
        return JSONResponse(status_code=exc.status_code, content=exc.to_content(), headers=headers)

    @api.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        """Answer any unhandled error with a JSON 500."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal error", "details": str(exc) or type(exc).__name__},
        )

    @api.post("/send-email", response_model=SendEmailResponse, dependencies=[auth_dependency])
    async def send_email(request: Request, relay: VerificationRelay = Depends(get_relay)):
        """Deliver a verification code to the recipient in the body."""
        payload = await _read_payload(request)
        result = await relay.handle_send(payload.model_dump(by_alias=True), _client_address(request))
        return SendEmailResponse.model_validate(result)

    @api.get("/health")
    async def health(relay: VerificationRelay = Depends(get_relay)):
        """Health check endpoint for container monitoring (no authentication required)."""
        return relay.health()

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics(relay: VerificationRelay = Depends(get_relay)):
        """Expose Prometheus metrics collected by the relay."""
        return Response(content=relay.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api
