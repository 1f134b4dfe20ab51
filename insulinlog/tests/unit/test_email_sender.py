# insulinlog/tests/unit/test_email_sender.py
import smtplib

import pytest

from insulinlog.adapters.email_sender import EmailSender
from insulinlog.tests.fakes import make_cfg


class RecordingSMTP:
    sessions = []

    def __init__(self, host, port, timeout=None):
        self.host, self.port, self.timeout = host, port, timeout
        self.calls = []
        self.messages = []
        RecordingSMTP.sessions.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        self.calls.append("starttls")

    def login(self, user, password):
        self.calls.append(("login", user, password))

    def send_message(self, msg):
        self.messages.append(msg)


class RefusingSMTP(RecordingSMTP):
    def send_message(self, msg):
        raise smtplib.SMTPRecipientsRefused({msg["To"]: (550, b"mailbox unavailable")})


def sender(factory, **kw):
    opts = dict(
        host="smtp.example.test",
        port=587,
        username="mailer",
        password="s3cret",
        sender="InsulinLog <no-reply@insulinlog.test>",
        timeout_s=3,
        smtp_factory=factory,
    )
    opts.update(kw)
    return EmailSender(**opts)


@pytest.fixture(autouse=True)
def _reset_sessions():
    RecordingSMTP.sessions = []


@pytest.mark.asyncio
async def test_send_email_over_starttls():
    res = await sender(RecordingSMTP).send_email("ama@example.com", "Renew", "Body text")

    assert res.success is True
    (session,) = RecordingSMTP.sessions
    assert (session.host, session.port, session.timeout) == ("smtp.example.test", 587, 3)
    assert session.calls == ["starttls", ("login", "mailer", "s3cret")]
    msg = session.messages[0]
    assert msg["To"] == "ama@example.com"
    assert msg["Subject"] == "Renew"
    assert msg["From"] == "InsulinLog <no-reply@insulinlog.test>"
    assert msg.get_content().strip() == "Body text"


@pytest.mark.asyncio
async def test_no_login_without_username():
    await sender(RecordingSMTP, username=None).send_email("ama@example.com", "s", "b")
    assert RecordingSMTP.sessions[0].calls == ["starttls"]


@pytest.mark.asyncio
async def test_smtp_error_is_a_failed_result():
    res = await sender(RefusingSMTP).send_email("nobody@example.com", "s", "b")
    assert res.success is False
    assert res.error.startswith("smtp:")


@pytest.mark.asyncio
async def test_disabled_sender_does_not_connect():
    res = await sender(RecordingSMTP, enabled=False).send_email("ama@example.com", "s", "b")
    assert res.success is True
    assert res.message_id == "disabled"
    assert RecordingSMTP.sessions == []


def test_from_config_defaults_to_disabled():
    s = EmailSender.from_config(make_cfg())
    assert s.enabled is False
    assert s.port == 587
