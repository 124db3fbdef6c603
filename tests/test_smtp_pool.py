import pytest

from mail_dispatch.smtp_pool import SMTPPool


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

    monkeypatch.setattr("mail_dispatch.smtp_pool.aiosmtplib.SMTP", factory)
    return created


@pytest.mark.asyncio
async def test_get_connection_reuses_active_instance(patch_aiosmtplib):
    pool = SMTPPool(ttl=30)
    smtp1 = await pool.get_connection("smtp.local", 25, "user", "pass", use_tls=False)
    smtp2 = await pool.get_connection("smtp.local", 25, "user", "pass", use_tls=False)

    assert smtp1 is smtp2
    assert smtp1.connected is True
    assert smtp1.login_credentials == ("user", "pass")
    assert len(patch_aiosmtplib) == 1


@pytest.mark.asyncio
async def test_login_is_skipped_without_credentials():
    pool = SMTPPool()
    smtp = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)

    assert smtp.login_credentials is None
    assert (smtp.use_tls, smtp.start_tls) == (False, False)


@pytest.mark.asyncio
async def test_tls_mode_depends_on_port():
    pool = SMTPPool()
    implicit = await pool.get_connection("smtp.local", 465, "u", "p", use_tls=True)
    await pool.discard()
    starttls = await pool.get_connection("smtp.local", 587, "u", "p", use_tls=True)

    assert (implicit.use_tls, implicit.start_tls) == (True, False)
    assert (starttls.use_tls, starttls.start_tls) == (False, True)


@pytest.mark.asyncio
async def test_changed_parameters_open_new_session():
    pool = SMTPPool(ttl=30)
    smtp1 = await pool.get_connection("smtp.local", 25, "user", "pass", use_tls=False)
    smtp2 = await pool.get_connection("smtp.other", 25, "user", "pass", use_tls=False)

    assert smtp1 is not smtp2
    assert smtp1.closed is True


@pytest.mark.asyncio
async def test_get_connection_discards_expired_instance():
    pool = SMTPPool(ttl=-1)
    smtp1 = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)
    smtp2 = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)

    assert smtp1 is not smtp2
    assert smtp1.closed is True


@pytest.mark.asyncio
async def test_get_connection_replaces_dead_instance():
    pool = SMTPPool(ttl=30)
    smtp1 = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)
    smtp1.alive = False
    smtp2 = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)

    assert smtp1 is not smtp2
    assert smtp1.closed is True


@pytest.mark.asyncio
async def test_discard_drops_current_session():
    pool = SMTPPool(ttl=30)
    smtp = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)

    await pool.discard()
    await pool.discard()

    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_cleanup_closes_dead_sessions():
    pool = SMTPPool(ttl=30)
    smtp = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)
    await pool.cleanup()
    assert smtp.closed is False

    smtp.alive = False
    await pool.cleanup()
    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_close_all_quits_everything():
    pool = SMTPPool(ttl=30)
    smtp = await pool.get_connection("smtp.local", 25, None, None, use_tls=False)

    await pool.close_all()

    assert smtp.closed is True
    assert pool.pool == {}
