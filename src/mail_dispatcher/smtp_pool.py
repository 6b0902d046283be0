# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Asyncio-friendly SMTP connection pool used by :class:`SmtpTransport`.

Connections are keyed by the asyncio task that opened them and by the
server parameters, so each worker task reuses its own session while
concurrent tasks never share one. A pooled connection is handed out again
only while it is younger than ``ttl`` seconds and answers ``NOOP``.

Example:
    ::

        pool = SMTPPool(ttl=300)
        async with pool.connection("smtp.example.com", 587, "user", "secret", use_tls=True) as smtp:
            await smtp.send_message(message)
        await pool.cleanup()
"""

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator

import aiosmtplib

from .logger import get_logger

ConnParams = tuple[str, int, str | None, str | None, bool]

CONNECT_TIMEOUT = 15.0
NOOP_TIMEOUT = 5.0


class SMTPPool:
    """Per-task SMTP connection pool with TTL and health checks.

    Attributes:
        ttl: Maximum idle age in seconds of a pooled connection.
        pool: Mapping of (task id, params) to (client, last use time).
    """

    def __init__(self, ttl: int = 300):
        self.ttl = ttl
        self.pool: dict[tuple[int, ConnParams], tuple[aiosmtplib.SMTP, float]] = {}
        self.lock = asyncio.Lock()
        self.logger = get_logger("SMTPPool")

    async def _connect(self, params: ConnParams) -> aiosmtplib.SMTP:
        """Open and authenticate a new session.

        Port 465 with TLS uses implicit TLS, other ports with TLS use STARTTLS,
        and ``use_tls=False`` stays in plain text.
        """
        host, port, user, password, use_tls = params
        implicit_tls = bool(use_tls and port == 465)
        smtp = aiosmtplib.SMTP(
            hostname=host,
            port=port,
            start_tls=bool(use_tls and not implicit_tls),
            use_tls=implicit_tls,
            timeout=10.0,
        )

        async def _do_connect() -> None:
            await smtp.connect()
            if user and password:
                await smtp.login(user, password)

        await asyncio.wait_for(_do_connect(), timeout=CONNECT_TIMEOUT)
        self.logger.debug("Opened SMTP connection to %s:%s", host, port)
        return smtp

    async def _is_alive(self, smtp: aiosmtplib.SMTP) -> bool:
        try:
            code, _ = await asyncio.wait_for(smtp.noop(), timeout=NOOP_TIMEOUT)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            return False
        return code == 250

    @staticmethod
    async def _quit(smtp: aiosmtplib.SMTP) -> None:
        with contextlib.suppress(aiosmtplib.SMTPException, OSError, asyncio.TimeoutError):
            await smtp.quit()

    async def get_connection(
        self, host: str, port: int, user: str | None, password: str | None, *, use_tls: bool
    ) -> aiosmtplib.SMTP:
        """Return a live session for the current task, reusing a pooled one when possible."""
        params: ConnParams = (host, port, user, password, bool(use_tls))
        key = (id(asyncio.current_task()), params)

        async with self.lock:
            entry = self.pool.pop(key, None)

        if entry:
            smtp, last_used = entry
            if (time.time() - last_used) < self.ttl and await self._is_alive(smtp):
                async with self.lock:
                    self.pool[key] = (smtp, time.time())
                return smtp
            await self._quit(smtp)

        smtp = await self._connect(params)
        async with self.lock:
            self.pool[key] = (smtp, time.time())
        return smtp

    async def discard(self, smtp: aiosmtplib.SMTP) -> None:
        """Drop a session from the pool, for example after a failed send."""
        async with self.lock:
            keys = [key for key, (client, _) in self.pool.items() if client is smtp]
            for key in keys:
                self.pool.pop(key, None)
        await self._quit(smtp)

    @contextlib.asynccontextmanager
    async def connection(
        self, host: str, port: int, user: str | None, password: str | None, *, use_tls: bool
    ) -> AsyncIterator[aiosmtplib.SMTP]:
        """Context manager around :meth:`get_connection`.

        A session that raised a connection-level error is discarded instead
        of being returned to the pool.
        """
        smtp = await self.get_connection(host, port, user, password, use_tls=use_tls)
        try:
            yield smtp
        except (aiosmtplib.SMTPServerDisconnected, aiosmtplib.SMTPConnectError, OSError, asyncio.TimeoutError):
            await self.discard(smtp)
            raise

    async def cleanup(self) -> None:
        """Close pooled sessions that expired or stopped answering."""
        now = time.time()
        async with self.lock:
            items = list(self.pool.items())

        stale: list[tuple[tuple[int, ConnParams], aiosmtplib.SMTP]] = []
        for key, (smtp, last_used) in items:
            if (now - last_used) > self.ttl or not await self._is_alive(smtp):
                stale.append((key, smtp))

        for key, smtp in stale:
            async with self.lock:
                entry = self.pool.pop(key, None)
            if entry:
                await self._quit(entry[0])

    async def close_all(self) -> None:
        async with self.lock:
            items = list(self.pool.values())
            self.pool.clear()
        for smtp, _ in items:
            await self._quit(smtp)
