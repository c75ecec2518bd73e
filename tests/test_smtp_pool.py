import asyncio
from email.message import EmailMessage

import aiosmtplib
import pytest

from otp_mail_relay.config import SMTPSettings
from otp_mail_relay.smtp_pool import SMTPPool


class DummySMTP:
    def __init__(self, hostname, port, use_tls=False, start_tls=None, timeout=None):
        self.hostname = hostname
        self.port = port
        self.use_tls = use_tls
        self.start_tls = start_tls
        self.timeout = timeout
        self.login_credentials = None
        self.connected = False
        self.closed = False
        self.quit_called = False
        self.alive = True
        self.sent = []
        self.fail_next_send = False

    async def connect(self):
        self.connected = True

    async def login(self, user, password):
        self.login_credentials = (user, password)

    async def noop(self):
        if not self.alive:
            raise aiosmtplib.SMTPServerDisconnected("Connection dead")
        return 250, "OK"

    async def send_message(self, message):
        if self.fail_next_send:
            self.fail_next_send = False
            raise aiosmtplib.SMTPDataError(451, "Try again later")
        self.sent.append(message)
        return {}, "2.0.0 OK queued"

    async def quit(self):
        self.quit_called = True
        self.closed = True

    def close(self):
        self.closed = True


@pytest.fixture(autouse=True)
def patch_aiosmtplib(monkeypatch):
    created = []

    def factory(**kwargs):
        smtp = DummySMTP(**kwargs)
        created.append(smtp)
        return smtp

    monkeypatch.setattr("otp_mail_relay.smtp_pool.aiosmtplib.SMTP", factory)
    return created


def make_message() -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = "relay@example.com"
    msg["To"] = "user@example.com"
    msg["Subject"] = "Code"
    msg.set_content("123456")
    return msg


@pytest.mark.asyncio
async def test_send_reuses_idle_connection(patch_aiosmtplib):
    pool = SMTPPool("smtp.local", 587, "user", "pass")

    assert await pool.send_message(make_message()) == "2.0.0 OK queued"
    await pool.send_message(make_message())

    assert len(patch_aiosmtplib) == 1
    smtp = patch_aiosmtplib[0]
    assert smtp.login_credentials == ("user", "pass")
    assert len(smtp.sent) == 2
    assert smtp.start_tls is None
    assert smtp.use_tls is False


@pytest.mark.asyncio
async def test_secure_uses_implicit_tls(patch_aiosmtplib):
    pool = SMTPPool("smtp.secure", 465, None, None, secure=True)
    await pool.send_message(make_message())

    smtp = patch_aiosmtplib[0]
    assert smtp.use_tls is True
    assert smtp.start_tls is False
    assert smtp.login_credentials is None


@pytest.mark.asyncio
async def test_connection_retired_after_max_messages(patch_aiosmtplib):
    pool = SMTPPool("smtp.local", 25, max_messages=2)

    for _ in range(3):
        await pool.send_message(make_message())

    assert len(patch_aiosmtplib) == 2
    first, second = patch_aiosmtplib
    assert first.quit_called is True
    assert len(first.sent) == 2
    assert len(second.sent) == 1


@pytest.mark.asyncio
async def test_expired_connection_is_replaced(patch_aiosmtplib):
    pool = SMTPPool("smtp.local", 25, ttl=-1)
    await pool.send_message(make_message())
    await pool.send_message(make_message())

    first, second = patch_aiosmtplib
    assert first.closed is True
    assert second is not first


@pytest.mark.asyncio
async def test_dead_connection_is_replaced(patch_aiosmtplib):
    pool = SMTPPool("smtp.local", 25)
    await pool.send_message(make_message())
    patch_aiosmtplib[0].alive = False

    await pool.send_message(make_message())

    assert len(patch_aiosmtplib) == 2
    assert patch_aiosmtplib[0].closed is True


@pytest.mark.asyncio
async def test_failed_send_discards_connection(patch_aiosmtplib):
    pool = SMTPPool("smtp.local", 25)
    await pool.send_message(make_message())
    patch_aiosmtplib[0].fail_next_send = True

    with pytest.raises(aiosmtplib.SMTPDataError):
        await pool.send_message(make_message())

    assert patch_aiosmtplib[0].closed is True
    assert pool.idle == []


@pytest.mark.asyncio
async def test_pool_size_bounds_open_connections(patch_aiosmtplib):
    release = asyncio.Event()
    pool = SMTPPool("smtp.local", 25, max_connections=2)

    async def hold():
        async with pool.connection():
            await release.wait()

    holders = [asyncio.create_task(hold()) for _ in range(3)]
    await asyncio.sleep(0.01)
    assert len(patch_aiosmtplib) == 2

    release.set()
    await asyncio.gather(*holders)
    # The third holder reused a connection released by the first two
    assert len(patch_aiosmtplib) == 2


@pytest.mark.asyncio
async def test_outbound_rate_limit_waits(monkeypatch):
    waits = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay, *args, **kwargs):
        waits.append(delay)
        await real_sleep(0)

    monkeypatch.setattr("otp_mail_relay.smtp_pool.asyncio.sleep", fake_sleep)
    pool = SMTPPool("smtp.local", 25, rate_limit=2, rate_delta=60)

    for _ in range(3):
        await pool.send_message(make_message())

    assert len(waits) == 1
    assert 0 < waits[0] <= 60


@pytest.mark.asyncio
async def test_close_quits_idle_connections(patch_aiosmtplib):
    pool = SMTPPool("smtp.local", 25)
    await pool.send_message(make_message())

    await pool.close()

    assert patch_aiosmtplib[0].quit_called is True
    assert pool.idle == []


def test_from_settings_and_snapshot():
    pool = SMTPPool.from_settings(
        SMTPSettings(host="smtp.example.com", port=465, secure=True, user="u", password="p",
                     max_connections=3, max_messages=50, rate_limit=5, rate_delta=2)
    )
    assert pool.host == "smtp.example.com"
    assert pool.secure is True
    assert pool.snapshot() == {
        "maxConnections": 3,
        "maxMessages": 50,
        "rateLimit": 5,
        "rateDelta": 2.0,
        "idleConnections": 0,
    }
