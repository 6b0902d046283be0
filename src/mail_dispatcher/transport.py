# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Transport clients: hand a rendered email to a provider.

Processors only see the :class:`TransportClient` protocol. A transport never
raises for provider-side failures; it returns a :class:`TransportResult`
whose ``retryable`` flag says whether another attempt may succeed.

Two reference clients are provided:

- :class:`SmtpTransport`: aiosmtplib through the pooled :class:`SMTPPool`
- :class:`HttpApiTransport`: JSON email API over aiohttp with a bearer token
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Any, Protocol

import aiohttp
import aiosmtplib

from .config import HttpTransportConfig, SmtpConfig
from .logger import get_logger
from .smtp_pool import SMTPPool


@dataclass
class OutgoingEmail:
    to: str
    subject: str
    html: str | None = None
    text: str | None = None
    sender: str | None = None
    reply_to: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class TransportResult:
    """Outcome of one send call.

    Attributes:
        success: The provider accepted the message.
        provider_message_id: Provider-side id, used later to match delivery
            and open signals.
        error: Human readable failure reason.
        error_code: Machine readable reason (SMTP code, HTTP status, ...).
        retryable: A later attempt may succeed (timeouts, 4xx SMTP, 5xx HTTP, 429).
    """

    success: bool
    provider_message_id: str | None = None
    error: str | None = None
    error_code: str | None = None
    retryable: bool = False


class TransportClient(Protocol):
    async def send(self, email: OutgoingEmail) -> TransportResult: ...


def classify_smtp_error(exc: Exception) -> tuple[bool, int | None]:
    """Classify an SMTP error as temporary or permanent.

    Returns:
        tuple: (is_temporary, smtp_code)
            - is_temporary: True if another attempt may succeed
            - smtp_code: The SMTP reply code if available, None otherwise
    """
    smtp_code = None
    if isinstance(exc, aiosmtplib.SMTPResponseException):
        smtp_code = exc.code
    elif isinstance(exc, aiosmtplib.SMTPException):
        smtp_code = getattr(exc, "code", None)

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError, aiosmtplib.SMTPServerDisconnected)):
        return True, smtp_code

    if smtp_code:
        if 400 <= smtp_code < 500:
            return True, smtp_code
        if 500 <= smtp_code < 600:
            return False, smtp_code

    error_msg = str(exc).lower()
    # TLS and credential problems will not fix themselves on retry
    permanent_patterns = [
        "wrong_version_number",
        "certificate verify failed",
        "ssl handshake",
        "certificate has expired",
        "self signed certificate",
        "authentication failed",
        "535",
        "534",
        "530",
    ]
    for pattern in permanent_patterns:
        if pattern in error_msg:
            return False, smtp_code

    temporary_patterns = [
        "421",
        "450",
        "451",
        "452",
        "timeout",
        "connection refused",
        "connection reset",
        "temporarily unavailable",
        "try again",
        "throttl",
    ]
    for pattern in temporary_patterns:
        if pattern in error_msg:
            return True, smtp_code

    if isinstance(exc, OSError):
        return True, smtp_code
    # Unknown errors retry; the retry budget bounds the damage
    return True, smtp_code


def _tag_header(tags: dict[str, str]) -> str:
    return "; ".join(f"{name}={value}" for name, value in tags.items())


class SmtpTransport:
    """Send through an SMTP relay with pooled connections.

    Args:
        host: Relay hostname.
        port: Relay port; 465 implies implicit TLS when ``use_tls`` is unset.
        user: Optional login.
        password: Optional password.
        use_tls: TLS mode; None means implicit TLS on 465 and plain otherwise.
        sender: Default From address.
        pool: Optional shared :class:`SMTPPool`.
    """

    def __init__(
        self,
        host: str,
        port: int = 587,
        *,
        user: str | None = None,
        password: str | None = None,
        use_tls: bool | None = None,
        sender: str = "noreply@localhost",
        pool: SMTPPool | None = None,
        pool_ttl: int = 300,
    ):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.use_tls = self.port == 465 if use_tls is None else bool(use_tls)
        self.sender = sender
        self.pool = pool or SMTPPool(ttl=pool_ttl)
        self.logger = get_logger("SmtpTransport")

    @classmethod
    def from_config(cls, config: SmtpConfig) -> SmtpTransport:
        if not config.host:
            raise ValueError("SMTP host is not configured")
        return cls(
            config.host,
            config.port,
            user=config.user,
            password=config.password,
            use_tls=config.use_tls,
            sender=config.sender,
            pool_ttl=config.pool_ttl,
        )

    def build_message(self, email: OutgoingEmail) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = email.sender or self.sender
        msg["To"] = email.to
        msg["Subject"] = email.subject
        msg["Message-ID"] = make_msgid(domain=(email.sender or self.sender).rpartition("@")[2] or None)
        if email.reply_to:
            msg["Reply-To"] = email.reply_to
        if email.tags:
            msg["X-Mail-Tags"] = _tag_header(email.tags)
        if email.text:
            msg.set_content(email.text)
            if email.html:
                msg.add_alternative(email.html, subtype="html")
        else:
            msg.set_content(email.html or "", subtype="html")
        for header, value in email.headers.items():
            if value is None:
                continue
            if header in msg:
                msg.replace_header(header, str(value))
            else:
                msg[header] = str(value)
        return msg

    async def send(self, email: OutgoingEmail) -> TransportResult:
        msg = self.build_message(email)
        message_id = str(msg["Message-ID"]).strip("<>")
        try:
            async with self.pool.connection(
                self.host, self.port, self.user, self.password, use_tls=self.use_tls
            ) as smtp:
                await smtp.send_message(msg)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            is_temporary, smtp_code = classify_smtp_error(exc)
            error_info = f"{exc} (SMTP {smtp_code})" if smtp_code else str(exc) or type(exc).__name__
            self.logger.debug("SMTP send to %s failed: %s", email.to, error_info)
            return TransportResult(
                success=False,
                error=error_info,
                error_code=str(smtp_code) if smtp_code else type(exc).__name__,
                retryable=is_temporary,
            )
        return TransportResult(success=True, provider_message_id=message_id)

    async def close(self) -> None:
        await self.pool.close_all()


class HttpApiTransport:
    """Send through a JSON email API (Resend-style ``POST /emails``).

    The API must answer 2xx with a JSON body carrying an ``id``. HTTP 429 and
    5xx are retryable, other 4xx are permanent rejections.
    """

    def __init__(
        self,
        url: str,
        token: str | None = None,
        *,
        sender: str = "noreply@localhost",
        timeout: float = 30.0,
        session: aiohttp.ClientSession | None = None,
    ):
        self.url = url
        self.token = token
        self.sender = sender
        self.timeout = timeout
        self._session = session
        self.logger = get_logger("HttpApiTransport")

    @classmethod
    def from_config(cls, config: HttpTransportConfig, timeout: float = 30.0) -> HttpApiTransport:
        if not config.url:
            raise ValueError("HTTP transport URL is not configured")
        return cls(config.url, config.token, sender=config.sender, timeout=timeout)

    def build_payload(self, email: OutgoingEmail) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "from": email.sender or self.sender,
            "to": [email.to],
            "subject": email.subject,
        }
        if email.html:
            payload["html"] = email.html
        if email.text:
            payload["text"] = email.text
        if email.reply_to:
            payload["reply_to"] = email.reply_to
        if email.headers:
            payload["headers"] = dict(email.headers)
        if email.tags:
            payload["tags"] = [{"name": name, "value": value} for name, value in email.tags.items()]
        return payload

    async def _post(self, session: aiohttp.ClientSession, payload: dict[str, Any]) -> TransportResult:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
        async with session.post(
            self.url,
            json=payload,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout),
        ) as resp:
            try:
                body = await resp.json(content_type=None)
            except (aiohttp.ContentTypeError, ValueError):
                body = None
            if 200 <= resp.status < 300:
                provider_id = body.get("id") if isinstance(body, dict) else None
                return TransportResult(success=True, provider_message_id=provider_id)
            message = None
            if isinstance(body, dict):
                message = body.get("message") or body.get("error")
            return TransportResult(
                success=False,
                error=f"HTTP {resp.status}: {message or resp.reason}",
                error_code=str(resp.status),
                retryable=resp.status == 429 or resp.status >= 500,
            )

    async def send(self, email: OutgoingEmail) -> TransportResult:
        payload = self.build_payload(email)
        try:
            if self._session is not None:
                return await self._post(self._session, payload)
            async with aiohttp.ClientSession() as session:
                return await self._post(session, payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.logger.debug("HTTP send to %s failed: %s", email.to, exc)
            return TransportResult(
                success=False,
                error=str(exc) or type(exc).__name__,
                error_code=type(exc).__name__,
                retryable=True,
            )

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
