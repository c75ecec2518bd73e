# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery request parsing and verification email rendering."""

from __future__ import annotations

import html
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr, make_msgid
from typing import Any

from .errors import BadRequest

REQUIRED_FIELDS = ("to", "subject", "code")
HEADER_FIELDS = ("to", "subject", "from")

HTML_TEMPLATE = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h2 style="color: #2563eb;">{brand}</h2>
  <h3>Your verification code</h3>
  <div style="background-color: #f3f4f6; padding: 20px; border-radius: 8px; text-align: center; margin: 20px 0;">
    <span style="font-size: 32px; font-weight: bold; color: #2563eb; letter-spacing: 4px;">{code}</span>
  </div>
  <p><strong>This code is valid for {minutes} minutes.</strong></p>
  <p>If you did not request this code, you can ignore this email.</p>
  <hr style="margin: 30px 0;">
  <p style="color: #6b7280; font-size: 14px;">
    Kind regards,<br>
    The {brand} team
  </p>
</div>
"""

TEXT_TEMPLATE = """\
{brand}

Your verification code: {code}

This code is valid for {minutes} minutes.
If you did not request this code, you can ignore this email.
"""


@dataclass(frozen=True)
class DeliveryRequest:
    """One verification email to deliver, taken verbatim from the request body."""

    to: str
    subject: str
    code: str
    from_name: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> DeliveryRequest:
        """Validate a request body and build a :class:`DeliveryRequest`.

        Raises:
            BadRequest: If ``to``, ``subject`` or ``code`` is missing or blank,
                or if a value ending up in a header contains a line break.
        """
        missing = [name for name in REQUIRED_FIELDS if not _text(payload.get(name))]
        if missing:
            raise BadRequest(missing)
        for name in HEADER_FIELDS:
            value = _text(payload.get(name))
            if "\r" in value or "\n" in value:
                raise BadRequest(message=f"Invalid characters in field: {name}")
        return cls(
            to=_text(payload["to"]),
            subject=_text(payload["subject"]),
            code=_text(payload["code"]),
            from_name=_text(payload.get("from")) or None,
        )


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def build_sender(mailbox: str, display_name: str | None = None) -> str:
    """Combine the relay mailbox with an optional display name."""
    if not display_name:
        return mailbox
    return formataddr((display_name, mailbox))


def render_body(code: str, *, brand: str, validity_minutes: int) -> tuple[str, str]:
    """Render the plain-text and HTML bodies embedding ``code``."""
    text = TEXT_TEMPLATE.format(brand=brand, code=code, minutes=validity_minutes)
    markup = HTML_TEMPLATE.format(
        brand=html.escape(brand),
        code=html.escape(code),
        minutes=validity_minutes,
    )
    return text, markup


def build_message(
    request: DeliveryRequest,
    *,
    mailbox: str,
    default_from_name: str | None = None,
    brand: str = "MedsTrackingApp",
    validity_minutes: int = 5,
) -> EmailMessage:
    """Build the ``EmailMessage`` sent for a delivery request.

    Args:
        request: The validated delivery request.
        mailbox: SMTP identity the relay sends from.
        default_from_name: Display name used when the caller gave none.
        brand: Product name shown in the body.
        validity_minutes: Code lifetime announced in the body.
    """
    msg = EmailMessage()
    msg["From"] = build_sender(mailbox, request.from_name or default_from_name)
    msg["To"] = request.to
    msg["Subject"] = request.subject
    domain = mailbox.rpartition("@")[2] or None
    msg["Message-ID"] = make_msgid(domain=domain)
    text, markup = render_body(request.code, brand=brand, validity_minutes=validity_minutes)
    msg.set_content(text)
    msg.add_alternative(markup, subtype="html")
    return msg
