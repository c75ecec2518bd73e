# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Bounded asyncio SMTP connection pool for the upstream relay.

The pool keeps up to ``max_connections`` aiosmtplib connections to a single
upstream server and hands them out to concurrent senders. It handles:

- Reuse of idle connections, validated with an SMTP NOOP before reuse
- Retirement of a connection after ``max_messages`` sends or ``ttl`` idle
- An outbound rate limit of ``rate_limit`` messages per ``rate_delta`` seconds
- Closing broken or cancelled connections instead of returning them

Example:
    Sending through the pool::

        pool = SMTPPool("smtp.example.com", 587, "relay@example.com", "secret")
        response = await pool.send_message(message)
        await pool.close()
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from email.message import EmailMessage

import aiosmtplib

from .config import SMTPSettings
from .logger import get_logger

logger = get_logger("SMTPPool")


@dataclass
class PooledConnection:
    smtp: aiosmtplib.SMTP
    messages: int = 0
    last_used: float = field(default_factory=time.monotonic)


class SMTPPool:
    """Asyncio SMTP connection pool bound to one upstream server.

    Attributes:
        host: Upstream SMTP hostname.
        port: Upstream SMTP port.
        user: Username for SMTP authentication, or None for no auth.
        secure: Implicit TLS when true, opportunistic STARTTLS otherwise.
        max_connections: Upper bound of simultaneously open connections.
        max_messages: Sends after which a connection is retired.
        rate_limit: Messages allowed per ``rate_delta`` seconds, 0 disables.
        send_timeout: Timeout in seconds of a single send.
        ttl: Idle seconds after which a pooled connection is discarded.
    """

    def __init__(
        self,
        host: str,
        port: int,
        user: str | None = None,
        password: str | None = None,
        *,
        secure: bool = False,
        max_connections: int = 5,
        max_messages: int = 100,
        rate_limit: int = 0,
        rate_delta: float = 1.0,
        send_timeout: float = 30.0,
        ttl: float = 300.0,
        connect_timeout: float = 10.0,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self._password = password
        self.secure = bool(secure)
        self.max_connections = max(1, int(max_connections))
        self.max_messages = max(1, int(max_messages))
        self.rate_limit = max(0, int(rate_limit))
        self.rate_delta = float(rate_delta)
        self.send_timeout = float(send_timeout)
        self.ttl = float(ttl)
        self.connect_timeout = float(connect_timeout)
        self.idle: list[PooledConnection] = []
        self.lock = asyncio.Lock()
        self._slots = asyncio.Semaphore(self.max_connections)
        self._rate_lock = asyncio.Lock()
        self._sent_at: deque[float] = deque()

    @classmethod
    def from_settings(cls, settings: SMTPSettings) -> SMTPPool:
        return cls(
            settings.host or "localhost",
            settings.port,
            settings.user,
            settings.password,
            secure=settings.secure,
            max_connections=settings.max_connections,
            max_messages=settings.max_messages,
            rate_limit=settings.rate_limit,
            rate_delta=settings.rate_delta,
            send_timeout=settings.send_timeout,
            ttl=settings.ttl,
        )

    async def _connect(self) -> aiosmtplib.SMTP:
        """Open and authenticate a new SMTP connection.

        TLS behavior:
        - ``secure=True``: implicit TLS from the first byte (typically port 465)
        - ``secure=False``: STARTTLS when the server advertises it, plain otherwise

        Raises:
            asyncio.TimeoutError: If connecting takes longer than
                ``connect_timeout`` plus a grace period.
            aiosmtplib.SMTPException: If connection or authentication fails.
        """
        if self.secure:
            smtp = aiosmtplib.SMTP(
                hostname=self.host, port=self.port, use_tls=True, start_tls=False, timeout=self.connect_timeout
            )
        else:
            smtp = aiosmtplib.SMTP(
                hostname=self.host, port=self.port, use_tls=False, start_tls=None, timeout=self.connect_timeout
            )

        async def _do_connect():
            await smtp.connect()
            if self.user and self._password:
                await smtp.login(self.user, self._password)

        await asyncio.wait_for(_do_connect(), timeout=self.connect_timeout + 5.0)
        logger.debug("Opened SMTP connection to %s:%s", self.host, self.port)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        """Check that a pooled connection still answers NOOP with 250."""
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=5.0)
            return code == 250
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            return False

    def _is_reusable(self, conn: PooledConnection) -> bool:
        fresh_enough = (time.monotonic() - conn.last_used) < self.ttl
        return fresh_enough and conn.messages < self.max_messages

    async def _checkout(self) -> PooledConnection:
        while True:
            async with self.lock:
                conn = self.idle.pop() if self.idle else None
            if conn is None:
                return PooledConnection(smtp=await self._connect())
            if self._is_reusable(conn) and await self._is_alive(conn.smtp):
                return conn
            await self._quit(conn)

    async def _checkin(self, conn: PooledConnection) -> None:
        conn.messages += 1
        conn.last_used = time.monotonic()
        if conn.messages >= self.max_messages:
            logger.debug("Retiring SMTP connection after %d messages", conn.messages)
            await self._quit(conn)
            return
        async with self.lock:
            self.idle.append(conn)

    @staticmethod
    def _discard(conn: PooledConnection) -> None:
        conn.smtp.close()

    @staticmethod
    async def _quit(conn: PooledConnection) -> None:
        try:
            await asyncio.wait_for(conn.smtp.quit(), timeout=5.0)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            conn.smtp.close()

    async def _throttle(self) -> None:
        """Wait until sending one more message respects the outbound rate limit."""
        if not self.rate_limit:
            return
        async with self._rate_lock:
            now = time.monotonic()
            while self._sent_at and now - self._sent_at[0] >= self.rate_delta:
                self._sent_at.popleft()
            if len(self._sent_at) >= self.rate_limit:
                wait = self.rate_delta - (now - self._sent_at[0])
                if wait > 0:
                    await asyncio.sleep(wait)
                self._sent_at.popleft()
            self._sent_at.append(time.monotonic())

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosmtplib.SMTP]:
        """Borrow a connection for the duration of the ``async with`` block.

        The connection goes back to the pool only when the block completes
        normally; on any error or cancellation it is closed.
        """
        async with self._slots:
            conn = await self._checkout()
            healthy = False
            try:
                yield conn.smtp
                healthy = True
            finally:
                if healthy:
                    await self._checkin(conn)
                else:
                    self._discard(conn)

    async def send_message(self, message: EmailMessage) -> str:
        """Send ``message`` through a pooled connection.

        Returns:
            The server response to the end of DATA.

        Raises:
            aiosmtplib.SMTPException: If the server rejects the message.
            asyncio.TimeoutError: If the send exceeds ``send_timeout``.
        """
        await self._throttle()
        async with self.connection() as smtp:
            _errors, response = await asyncio.wait_for(smtp.send_message(message), timeout=self.send_timeout)
        return response

    async def close(self) -> None:
        """Close every idle connection."""
        async with self.lock:
            idle, self.idle = self.idle, []
        for conn in idle:
            await self._quit(conn)

    def snapshot(self) -> dict[str, object]:
        return {
            "maxConnections": self.max_connections,
            "maxMessages": self.max_messages,
            "rateLimit": self.rate_limit,
            "rateDelta": self.rate_delta,
            "idleConnections": len(self.idle),
        }
