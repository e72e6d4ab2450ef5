import pytest

from async_notify_service.smtp_pool import SMTPPool, SmtpSettings


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
            raise RuntimeError("Connection dead")
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

    monkeypatch.setattr("async_notify_service.smtp_pool.aiosmtplib.SMTP", factory)
    return created


RELAY = SmtpSettings(host="smtp.local", port=25, user="user", password="pass", use_tls=False)


def test_implicit_tls_defaults_on_for_port_465():
    assert SmtpSettings(host="h", port=465).tls is True
    assert SmtpSettings(host="h", port=587).tls is False
    assert SmtpSettings(host="h", port=465, use_tls=False).tls is False


@pytest.mark.asyncio
async def test_get_connection_reuses_active_instance(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    smtp1 = await pool.get_connection(RELAY)
    smtp2 = await pool.get_connection(RELAY)

    assert smtp1 is smtp2
    assert smtp1.login_credentials == ("user", "pass")
    assert len(patch_aiosmtplib) == 1


@pytest.mark.asyncio
async def test_get_connection_discards_expired_instance(patch_aiosmtplib):
    pool = SMTPPool(ttl=-1)
    smtp1 = await pool.get_connection(RELAY)
    smtp2 = await pool.get_connection(RELAY)

    assert smtp1.closed is True
    assert smtp2 is not smtp1


@pytest.mark.asyncio
async def test_discard_closes_current_connection(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    smtp = await pool.get_connection(RELAY)

    await pool.discard()
    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_cleanup_removes_dead_connections(monkeypatch, patch_aiosmtplib):
    pool = SMTPPool(ttl=60)
    smtp = await pool.get_connection(RELAY)
    smtp.alive = False

    await pool.cleanup()
    assert smtp.closed is True
    assert pool.pool == {}
