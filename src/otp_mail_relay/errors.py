# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Error taxonomy of the relay.

Every failure that ends a request is a :class:`RelayError` subclass
carrying the HTTP status code, a short machine-readable error code and a
human-readable message. The API layer turns each of them into exactly one
JSON response through :meth:`RelayError.to_content`.
"""

from __future__ import annotations

from typing import Any


class ConfigurationError(RuntimeError):
    """Raised at startup when mandatory settings are missing."""

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required configuration: {', '.join(self.missing)}")


class RelayError(Exception):
    """Base class for errors reported to the caller."""

    status_code: int = 500
    error: str = "Internal error"

    def __init__(self, message: str | None = None):
        self.message = message or self.error
        super().__init__(self.message)

    @property
    def retry_after(self) -> int | None:
        return None

    def to_content(self) -> dict[str, Any]:
        return {"error": self.error, "message": self.message}


class BadRequest(RelayError):
    """Client input is missing or malformed."""

    status_code = 400
    error = "MissingField"

    def __init__(self, missing: list[str] | None = None, message: str | None = None):
        self.missing = list(missing or [])
        if message is None:
            message = f"Missing required fields: {', '.join(self.missing)}"
        super().__init__(message)

    def to_content(self) -> dict[str, Any]:
        return {"error": self.message}


class Unauthorized(RelayError):
    """The credential header is absent or does not match."""

    status_code = 401
    MISSING = "MissingCredential"
    INVALID = "InvalidCredential"

    def __init__(self, reason: str):
        self.error = reason
        if reason == self.MISSING:
            message = "API key is required"
        else:
            message = "Invalid API key"
        super().__init__(message)


class _RetryableRejection(RelayError):
    status_code = 429

    def __init__(self, retry_after: int, message: str | None = None):
        self._retry_after = max(1, int(retry_after))
        super().__init__(message)

    @property
    def retry_after(self) -> int:
        return self._retry_after

    def to_content(self) -> dict[str, Any]:
        content = super().to_content()
        content["retryAfter"] = self._retry_after
        return content


class RateLimited(_RetryableRejection):
    """Too many requests for one (client address, recipient) key."""

    error = "RateLimited"

    def __init__(self, retry_after: int):
        super().__init__(retry_after, f"Too many requests, retry in {max(1, int(retry_after))} seconds")


class Overloaded(_RetryableRejection):
    """Too many requests in flight system-wide."""

    error = "Overloaded"

    def __init__(self, retry_after: int = 5):
        super().__init__(retry_after, "Server is busy, please retry later")


class RequestTimeout(RelayError):
    """The request exceeded its wall-clock budget."""

    status_code = 408
    error = "Timeout"

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Request did not complete within {timeout:g} seconds")


class DeliveryFailed(RelayError):
    """The upstream transport failed on every attempt."""

    status_code = 500
    error = "Failed to send email"

    def __init__(self, cause: BaseException, attempts: int):
        self.cause = cause
        self.attempts = attempts
        super().__init__(str(cause) or type(cause).__name__)

    def to_content(self) -> dict[str, Any]:
        return {"error": self.error, "details": self.message}
