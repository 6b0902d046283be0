import asyncio
import contextlib
from typing import Any, Dict, List

import aiohttp
import aiosmtplib
import pytest

from mail_dispatcher.config import HttpTransportConfig, SmtpConfig
from mail_dispatcher.transport import (
    HttpApiTransport,
    OutgoingEmail,
    SmtpTransport,
    classify_smtp_error,
)


class DummySMTP:
    def __init__(self):
        self.sent: List[Any] = []
        self.raise_error: Exception | None = None

    async def send_message(self, message, **_kwargs):
        if self.raise_error:
            raise self.raise_error
        self.sent.append(message)


class DummyPool:
    def __init__(self):
        self.smtp = DummySMTP()
        self.requests: List[Any] = []
        self.closed = False

    @contextlib.asynccontextmanager
    async def connection(self, host, port, user, password, *, use_tls):
        self.requests.append((host, port, user, password, use_tls))
        yield self.smtp

    async def close_all(self):
        self.closed = True


class DummyResponse:
    def __init__(self, status: int, body: Any = None, reason: str = "OK"):
        self.status = status
        self.reason = reason
        self._body = body

    async def json(self, content_type=None):
        if isinstance(self._body, Exception):
            raise self._body
        return self._body


class DummySession:
    def __init__(self, response: DummyResponse | None = None, error: Exception | None = None):
        self.response = response
        self.error = error
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    @contextlib.asynccontextmanager
    async def _request(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        if self.error:
            raise self.error
        yield self.response

    def post(self, url, **kwargs):
        return self._request(url, **kwargs)

    async def close(self):
        self.closed = True


def email(**overrides) -> OutgoingEmail:
    data = dict(
        to="ada@example.com",
        subject="Hello",
        html="<p>Hi</p>",
        text="Hi",
        tags={"email_type": "welcome", "user_id": "u1"},
    )
    data.update(overrides)
    return OutgoingEmail(**data)


# --- SMTP error classification ---


@pytest.mark.parametrize(
    "exc, expected",
    [
        (aiosmtplib.SMTPResponseException(421, "Service not available"), (True, 421)),
        (aiosmtplib.SMTPResponseException(550, "Mailbox unavailable"), (False, 550)),
        (aiosmtplib.SMTPServerDisconnected("lost"), (True, None)),
        (asyncio.TimeoutError(), (True, None)),
        (ConnectionRefusedError("connection refused"), (True, None)),
        (aiosmtplib.SMTPException("authentication failed"), (False, None)),
        (aiosmtplib.SMTPException("certificate verify failed"), (False, None)),
        (RuntimeError("something odd"), (True, None)),
    ],
)
def test_classify_smtp_error(exc, expected):
    assert classify_smtp_error(exc) == expected


# --- SmtpTransport ---


@pytest.mark.asyncio
async def test_smtp_send_success():
    pool = DummyPool()
    transport = SmtpTransport("smtp.local", 587, user="u", password="p", sender="app@example.com", pool=pool)
    result = await transport.send(email(headers={"X-Campaign": "spring"}, reply_to="help@example.com"))

    assert result.success is True
    assert pool.requests == [("smtp.local", 587, "u", "p", False)]
    msg = pool.smtp.sent[0]
    assert msg["From"] == "app@example.com"
    assert msg["To"] == "ada@example.com"
    assert msg["Reply-To"] == "help@example.com"
    assert msg["X-Campaign"] == "spring"
    assert msg["X-Mail-Tags"] == "email_type=welcome; user_id=u1"
    assert msg.is_multipart()
    assert result.provider_message_id == str(msg["Message-ID"]).strip("<>")


@pytest.mark.asyncio
async def test_smtp_permanent_rejection():
    pool = DummyPool()
    pool.smtp.raise_error = aiosmtplib.SMTPRecipientRefused(550, "No such user", "ada@example.com")
    transport = SmtpTransport("smtp.local", pool=pool)
    result = await transport.send(email())

    assert result.success is False
    assert result.retryable is False
    assert result.error_code == "550"
    assert "SMTP 550" in result.error


@pytest.mark.asyncio
async def test_smtp_transient_failure():
    pool = DummyPool()
    pool.smtp.raise_error = aiosmtplib.SMTPServerDisconnected("Connection lost")
    transport = SmtpTransport("smtp.local", pool=pool)
    result = await transport.send(email())

    assert result.success is False
    assert result.retryable is True
    assert result.error_code == "SMTPServerDisconnected"


@pytest.mark.asyncio
async def test_smtp_close_closes_pool():
    pool = DummyPool()
    transport = SmtpTransport("smtp.local", pool=pool)
    await transport.close()
    assert pool.closed is True


def test_smtp_from_config():
    transport = SmtpTransport.from_config(SmtpConfig(host="smtp.local", port=465, sender="a@example.com"))
    assert transport.use_tls is True
    assert transport.sender == "a@example.com"
    with pytest.raises(ValueError):
        SmtpTransport.from_config(SmtpConfig())


# --- HttpApiTransport ---


@pytest.mark.asyncio
async def test_http_send_success():
    session = DummySession(DummyResponse(200, {"id": "re_123"}))
    transport = HttpApiTransport("https://api.example.com/emails", "tok", sender="app@example.com", session=session)
    result = await transport.send(email())

    assert result.success is True
    assert result.provider_message_id == "re_123"
    call = session.calls[0]
    assert call["url"] == "https://api.example.com/emails"
    assert call["headers"] == {"Authorization": "Bearer tok"}
    assert call["json"]["from"] == "app@example.com"
    assert call["json"]["to"] == ["ada@example.com"]
    assert {"name": "user_id", "value": "u1"} in call["json"]["tags"]


@pytest.mark.parametrize(
    "status, retryable",
    [(429, True), (500, True), (503, True), (400, False), (422, False)],
)
@pytest.mark.asyncio
async def test_http_error_classification(status, retryable):
    session = DummySession(DummyResponse(status, {"message": "nope"}, reason="Error"))
    transport = HttpApiTransport("https://api.example.com/emails", session=session)
    result = await transport.send(email())

    assert result.success is False
    assert result.retryable is retryable
    assert result.error_code == str(status)
    assert "nope" in result.error


@pytest.mark.asyncio
async def test_http_non_json_body():
    session = DummySession(DummyResponse(502, ValueError("not json"), reason="Bad Gateway"))
    transport = HttpApiTransport("https://api.example.com/emails", session=session)
    result = await transport.send(email())
    assert result.retryable is True
    assert "Bad Gateway" in result.error


@pytest.mark.asyncio
async def test_http_client_error_is_retryable():
    session = DummySession(error=aiohttp.ClientConnectionError("refused"))
    transport = HttpApiTransport("https://api.example.com/emails", session=session)
    result = await transport.send(email())
    assert result.success is False
    assert result.retryable is True
    assert result.error_code == "ClientConnectionError"

    await transport.close()
    assert session.closed is True


def test_http_from_config():
    transport = HttpApiTransport.from_config(HttpTransportConfig(url="https://x", token="t"), timeout=5)
    assert transport.timeout == 5
    with pytest.raises(ValueError):
        HttpApiTransport.from_config(HttpTransportConfig())
