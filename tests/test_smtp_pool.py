import asyncio

import aiosmtplib
import pytest

from email_scheduler.smtp_pool import SMTPPool


class DummySMTP:
    def __init__(self, hostname, port, start_tls=False, use_tls=False, timeout=None):
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
        return 250, b"OK"

    async def quit(self):
        self.closed = True


@pytest.fixture(autouse=True)
def patch_aiosmtplib(monkeypatch):
    created = []

    def factory(**kwargs):
        smtp = DummySMTP(**kwargs)
        created.append(smtp)
        return smtp

    monkeypatch.setattr("email_scheduler.smtp_pool.aiosmtplib.SMTP", factory)
    return created


@pytest.mark.asyncio
async def test_get_connection_reuses_active_instance(patch_aiosmtplib):
    pool = SMTPPool("smtp.local", 25, "user", "pass", ttl=30)
    smtp1 = await pool.get_connection()
    smtp2 = await pool.get_connection()

    assert smtp1 is smtp2
    assert smtp1.connected is True
    assert smtp1.login_credentials == ("user", "pass")
    assert len(patch_aiosmtplib) == 1


@pytest.mark.asyncio
async def test_get_connection_skips_login_without_credentials(patch_aiosmtplib):
    pool = SMTPPool("smtp.local", 25)
    smtp = await pool.get_connection()
    assert smtp.login_credentials is None


@pytest.mark.asyncio
async def test_get_connection_discards_expired_instance(patch_aiosmtplib):
    pool = SMTPPool("smtp.local", 25, ttl=-1)
    smtp1 = await pool.get_connection()

    smtp2 = await pool.get_connection()
    assert smtp1.closed is True
    assert smtp2 is not smtp1


@pytest.mark.asyncio
async def test_get_connection_replaces_dead_instance(patch_aiosmtplib):
    pool = SMTPPool("smtp.local", 25, ttl=30)
    smtp1 = await pool.get_connection()
    smtp1.alive = False

    smtp2 = await pool.get_connection()
    assert smtp2 is not smtp1
    assert smtp1.closed is True


@pytest.mark.asyncio
async def test_each_task_gets_its_own_connection(patch_aiosmtplib):
    pool = SMTPPool("smtp.local", 25, ttl=30)

    async def grab():
        return await pool.get_connection()

    first, second = await asyncio.gather(asyncio.create_task(grab()), asyncio.create_task(grab()))
    assert first is not second
    assert len(pool.pool) == 2


@pytest.mark.asyncio
async def test_release_current_closes_connection(patch_aiosmtplib):
    pool = SMTPPool("smtp.local", 25, ttl=30)
    smtp = await pool.get_connection()

    await pool.release_current()
    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_cleanup_removes_dead_connections(monkeypatch, patch_aiosmtplib):
    pool = SMTPPool("smtp.local", 25, ttl=1)
    smtp = await pool.get_connection()

    async def fake_is_alive(_smtp):
        return False

    monkeypatch.setattr(pool, "_is_alive", fake_is_alive)

    await pool.cleanup()
    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_tls_defaults_follow_port(patch_aiosmtplib):
    pool = SMTPPool("smtp.secure", 465, ttl=30)
    smtp = await pool.get_connection()
    assert smtp.use_tls is True
    assert smtp.start_tls is False

    plain = SMTPPool("smtp.local", 587, start_tls=True)
    assert plain.use_tls is False
    assert plain.start_tls is True


@pytest.mark.asyncio
async def test_close_quits_every_connection(patch_aiosmtplib):
    pool = SMTPPool("smtp.local", 25, ttl=30)
    smtp = await pool.get_connection()
    await pool.close()
    assert smtp.closed is True
    assert pool.pool == {}
