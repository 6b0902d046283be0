import aiosmtplib
import pytest

from mail_dispatcher.smtp_pool import SMTPPool


class DummySMTP:
    def __init__(self, hostname, port, start_tls=True, use_tls=False, timeout=None):
        self.hostname = hostname
        self.port = port
        self.start_tls = start_tls
        self.use_tls = use_tls
        self.timeout = timeout
        self.login_credentials = None
        self.connected = False
        self.closed = False
        self.alive = True

    async def connect(self):
        self.connected = True

    async def login(self, user, password):
        self.login_credentials = (user, password)

    async def noop(self):
        if not self.alive:
            raise aiosmtplib.SMTPServerDisconnected("Connection dead")
        return 250, "OK"

    async def quit(self):
        self.closed = True


@pytest.fixture(autouse=True)
def patch_aiosmtplib(monkeypatch):
    created = []

    def factory(**kwargs):
        smtp = DummySMTP(**kwargs)
        created.append(smtp)
        return smtp

    monkeypatch.setattr("mail_dispatcher.smtp_pool.aiosmtplib.SMTP", factory)
    return created


@pytest.mark.asyncio
async def test_get_connection_reuses_active_instance(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    smtp1 = await pool.get_connection("smtp.local", 25, "user", "pass", use_tls=False)
    smtp2 = await pool.get_connection("smtp.local", 25, "user", "pass", use_tls=False)

    assert smtp1 is smtp2
    assert smtp1.login_credentials == ("user", "pass")
    assert len(patch_aiosmtplib) == 1


@pytest.mark.asyncio
async def test_tls_modes(patch_aiosmtplib):
    pool = SMTPPool()
    implicit = await pool.get_connection("smtp.local", 465, None, None, use_tls=True)
    starttls = await pool.get_connection("smtp.local", 587, None, None, use_tls=True)
    plain = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)

    assert (implicit.use_tls, implicit.start_tls) == (True, False)
    assert (starttls.use_tls, starttls.start_tls) == (False, True)
    assert (plain.use_tls, plain.start_tls) == (False, False)
    assert implicit.login_credentials is None


@pytest.mark.asyncio
async def test_get_connection_discards_expired_instance(patch_aiosmtplib):
    pool = SMTPPool(ttl=-1)
    smtp1 = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)

    smtp2 = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)
    assert smtp1.closed is True
    assert smtp2 is not smtp1


@pytest.mark.asyncio
async def test_dead_connection_is_replaced(patch_aiosmtplib):
    pool = SMTPPool(ttl=300)
    smtp1 = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)
    smtp1.alive = False

    smtp2 = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)
    assert smtp2 is not smtp1
    assert smtp1.closed is True


@pytest.mark.asyncio
async def test_connection_context_discards_on_disconnect(patch_aiosmtplib):
    pool = SMTPPool(ttl=300)
    with pytest.raises(aiosmtplib.SMTPServerDisconnected):
        async with pool.connection("smtp.local", 25, None, None, use_tls=False) as smtp:
            raise aiosmtplib.SMTPServerDisconnected("gone")
    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_cleanup_removes_dead_connections(monkeypatch, patch_aiosmtplib):
    pool = SMTPPool(ttl=1)
    smtp = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)

    async def fake_is_alive(_smtp):
        return False

    monkeypatch.setattr(pool, "_is_alive", fake_is_alive)

    await pool.cleanup()
    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_close_all(patch_aiosmtplib):
    pool = SMTPPool()
    smtp = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)
    await pool.close_all()
    assert smtp.closed is True
    assert pool.pool == {}
