import pytest

from async_reply_service.errors import TransportError
from async_reply_service.models import IncomingEmail, MailServerConfig, OutboundReply
from async_reply_service.smtp_sender import (
    ALTERNATIVE_BOUNDARY,
    SMTPReplySender,
    admin_reply_body,
    build_message,
    build_reply,
    reply_subject,
    thread_references,
)


class DummySMTP:
    def __init__(self, hostname, port, start_tls=False, use_tls=False, timeout=None):
        self.hostname = hostname
        self.port = port
        self.start_tls = start_tls
        self.use_tls = use_tls
        self.timeout = timeout
        self.login_credentials = None
        self.is_connected = False
        self.sent = []
        self.quit_called = False

    async def connect(self):
        self.is_connected = True

    async def login(self, user, password):
        self.login_credentials = (user, password)

    async def send_message(self, message, sender=None, recipients=None):
        self.sent.append((message, sender, recipients))
        return {}, "OK"

    async def quit(self):
        self.quit_called = True
        self.is_connected = False


@pytest.fixture
def patch_aiosmtplib(monkeypatch):
    created = []

    def factory(**kwargs):
        smtp = DummySMTP(**kwargs)
        created.append(smtp)
        return smtp

    monkeypatch.setattr("async_reply_service.smtp_sender.aiosmtplib.SMTP", factory)
    return created


ORIGINAL = IncomingEmail(
    sender="alice@example.com",
    subject="Question about my order",
    message_id="<A>",
    references="<X> <Y>",
)


def test_reply_threads_under_original():
    reply = build_reply(ORIGINAL, "Sure!", from_address="shop@shop.test")

    assert reply.in_reply_to == "<A>"
    assert reply.references == "<X> <Y> <A>"
    assert reply.to == "alice@example.com"
    assert reply.reply_to == "shop@shop.test"
    assert reply.subject == "Re: Question about my order"


def test_thread_references_without_prior_chain():
    assert thread_references(IncomingEmail(message_id="<A>")) == "<A>"
    assert thread_references(IncomingEmail(references="<X>")) == "<X>"
    assert thread_references(IncomingEmail()) == ""


@pytest.mark.parametrize(
    "subject, expected",
    [
        ("Hello", "Re: Hello"),
        ("Re: Hello", "Re: Hello"),
        ("RE: Hello", "RE: Hello"),
        ("re:Hello", "re:Hello"),
        ("", "Re: "),
    ],
)
def test_reply_subject_is_prefixed_once(subject, expected):
    assert reply_subject(subject) == expected
    assert reply_subject(reply_subject(subject)) == expected


def test_build_message_single_plain_part():
    msg = build_message(
        OutboundReply(from_address="shop@shop.test", from_name="Shop", to="alice@example.com", subject="Hi", body="text")
    )

    assert msg["From"] == "Shop <shop@shop.test>"
    assert msg["To"] == "alice@example.com"
    assert msg["Subject"] == "Hi"
    assert msg["MIME-Version"] == "1.0"
    assert msg["Message-ID"].endswith("@shop.test>")
    assert msg["Date"]
    assert msg["In-Reply-To"] is None
    assert msg["References"] is None
    assert msg["Reply-To"] is None
    assert msg.get_content_type() == "text/plain"
    assert msg.get_content().strip() == "text"


def test_build_message_html_only():
    msg = build_message(
        OutboundReply(from_address="shop@shop.test", to="alice@example.com", subject="Hi", html_body="<p>x</p>")
    )
    assert msg["From"] == "shop@shop.test"
    assert msg.get_content_type() == "text/html"


def test_build_message_alternative_uses_fixed_boundary():
    reply = build_reply(ORIGINAL, "plain text", from_address="shop@shop.test", html_body="<p>html text</p>")
    msg = build_message(reply)

    assert msg.get_content_type() == "multipart/alternative"
    assert msg.get_boundary() == ALTERNATIVE_BOUNDARY
    parts = list(msg.iter_parts())
    assert [p.get_content_type() for p in parts] == ["text/plain", "text/html"]
    assert parts[0].get_content().strip() == "plain text"
    assert parts[1].get_content().strip() == "<p>html text</p>"
    assert msg["In-Reply-To"] == "<A>"
    assert msg["References"] == "<X> <Y> <A>"
    assert msg["Reply-To"] == "shop@shop.test"
    assert f"--{ALTERNATIVE_BOUNDARY}" in msg.as_string()


def test_build_message_requires_recipient():
    with pytest.raises(KeyError):
        build_message(OutboundReply(from_address="shop@shop.test", to="", subject="x", body="y"))


def test_admin_reply_body():
    assert admin_reply_body("Alice", "It ships tomorrow.", "Shop") == (
        "Hi Alice,\n\nIt ships tomorrow.\n\nBest regards,\nShop"
    )
    assert admin_reply_body("", "ok", "Shop").startswith("Hi,\n\n")


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "port, use_tls, implicit, starttls",
    [(465, True, True, False), (587, True, False, True), (25, False, False, None)],
)
async def test_tls_mode_follows_port(patch_aiosmtplib, port, use_tls, implicit, starttls):
    sender = SMTPReplySender(timeout=5)
    config = MailServerConfig(server="smtp.shop.test", port=port, username="u", password="p", use_tls=use_tls)

    await sender.send(config, build_reply(ORIGINAL, "body", from_address="shop@shop.test"))

    smtp = patch_aiosmtplib[0]
    assert (smtp.hostname, smtp.port, smtp.timeout) == ("smtp.shop.test", port, 5)
    assert smtp.use_tls is implicit
    assert smtp.start_tls is starttls


@pytest.mark.asyncio
async def test_send_logs_in_and_delivers_to_recipient(patch_aiosmtplib):
    sender = SMTPReplySender()
    config = MailServerConfig(server="smtp.shop.test", port=587, username="u", password="p", use_tls=True)

    msg = await sender.send(config, build_reply(ORIGINAL, "body", from_address="shop@shop.test"))

    smtp = patch_aiosmtplib[0]
    assert smtp.login_credentials == ("u", "p")
    sent, envelope_from, recipients = smtp.sent[0]
    assert sent is msg
    assert envelope_from == "shop@shop.test"
    assert recipients == ["alice@example.com"]
    assert smtp.quit_called is True


@pytest.mark.asyncio
async def test_send_without_credentials_skips_login(patch_aiosmtplib):
    sender = SMTPReplySender()
    config = MailServerConfig(server="localhost", port=25)

    await sender.send(config, build_reply(ORIGINAL, "body", from_address="shop@shop.test"))

    assert patch_aiosmtplib[0].login_credentials is None


@pytest.mark.asyncio
async def test_send_failure_raises_transport_error(patch_aiosmtplib, monkeypatch):
    async def refuse(self, message, sender=None, recipients=None):
        raise ConnectionRefusedError("550 mailbox unavailable")

    monkeypatch.setattr(DummySMTP, "send_message", refuse)
    sender = SMTPReplySender()
    config = MailServerConfig(server="smtp.shop.test", port=587)

    with pytest.raises(TransportError, match="failed to send email"):
        await sender.send(config, build_reply(ORIGINAL, "body", from_address="shop@shop.test"))
    assert patch_aiosmtplib[0].quit_called is True
