"""Compose and transmit threaded replies over SMTP."""

from __future__ import annotations

import asyncio
from email.message import EmailMessage
from email.utils import formataddr, formatdate, make_msgid
from typing import TYPE_CHECKING, Optional

import aiosmtplib

from .errors import TransportError
from .logger import get_logger
from .models import IncomingEmail, MailServerConfig, OutboundReply

if TYPE_CHECKING:
    from logging import Logger

REPLY_PREFIX = "Re: "
ALTERNATIVE_BOUNDARY = "boundary-string-12345"
IMPLICIT_TLS_PORT = 465


def reply_subject(subject: str) -> str:
    """Prefix ``subject`` with ``Re: `` unless it already starts with ``re:``."""
    subject = subject or ""
    if subject.lower().startswith(REPLY_PREFIX.strip().lower()):
        return subject
    return REPLY_PREFIX + subject


def thread_references(original: IncomingEmail) -> str:
    """Return the ``References`` chain of a reply to ``original``."""
    references = (original.references or "").strip()
    message_id = (original.message_id or "").strip()
    if references and message_id:
        return f"{references} {message_id}"
    if message_id:
        return message_id
    return references


def build_reply(
    original: IncomingEmail,
    body: str,
    *,
    from_address: str,
    from_name: str = "",
    html_body: str = "",
) -> OutboundReply:
    """Answer ``original`` so that mail clients thread the reply under it."""
    return OutboundReply(
        from_address=from_address,
        from_name=from_name,
        to=original.sender,
        reply_to=from_address,
        subject=reply_subject(original.subject),
        body=body,
        html_body=html_body,
        in_reply_to=original.message_id,
        references=thread_references(original),
    )


def build_message(reply: OutboundReply) -> EmailMessage:
    """Translate an :class:`OutboundReply` into an :class:`EmailMessage`.

    Plain and HTML together produce ``multipart/alternative`` with the plain
    part first and a fixed boundary; otherwise a single UTF-8 part is used.
    """
    if not reply.to:
        raise KeyError("to")

    msg = EmailMessage()
    msg["From"] = formataddr((reply.from_name, reply.from_address)) if reply.from_name else reply.from_address
    msg["To"] = reply.to
    msg["Subject"] = reply.subject
    msg["Date"] = formatdate(localtime=False, usegmt=True)
    domain = reply.from_address.rpartition("@")[2] or None
    msg["Message-ID"] = make_msgid(domain=domain)
    if reply.reply_to:
        msg["Reply-To"] = reply.reply_to
    if reply.in_reply_to:
        msg["In-Reply-To"] = reply.in_reply_to
    if reply.references:
        msg["References"] = reply.references

    if reply.html_body and reply.body:
        msg.set_content(reply.body, subtype="plain", charset="utf-8")
        msg.add_alternative(reply.html_body, subtype="html", charset="utf-8")
        msg.set_boundary(ALTERNATIVE_BOUNDARY)
    elif reply.html_body:
        msg.set_content(reply.html_body, subtype="html", charset="utf-8")
    else:
        msg.set_content(reply.body or "", subtype="plain", charset="utf-8")
    return msg


class SMTPReplySender:
    """Deliver replies through a tenant's SMTP server, one connection per send."""

    def __init__(self, *, timeout: float = 30.0, logger: Logger | None = None):
        self.timeout = timeout
        self.logger = logger or get_logger("smtp")

    def _client(self, config: MailServerConfig) -> aiosmtplib.SMTP:
        # use_tls on 465 means implicit TLS; on other ports STARTTLS is required.
        # Without use_tls, STARTTLS is still used whenever the server offers it.
        implicit_tls = config.use_tls and int(config.port) == IMPLICIT_TLS_PORT
        start_tls: Optional[bool] = (not implicit_tls) if config.use_tls else None
        return aiosmtplib.SMTP(
            hostname=config.server,
            port=int(config.port),
            use_tls=implicit_tls,
            start_tls=start_tls,
            timeout=self.timeout,
        )

    async def send(self, config: MailServerConfig, reply: OutboundReply) -> EmailMessage:
        """Compose and transmit ``reply``. Returns the message that was sent.

        Raises:
            TransportError: On any connection, authentication or delivery error.
        """
        msg = build_message(reply)
        smtp = self._client(config)
        try:
            async with asyncio.timeout(self.timeout * 2):
                await smtp.connect()
                if config.username and config.password:
                    await smtp.login(config.username, config.password)
                await smtp.send_message(msg, sender=reply.from_address, recipients=[reply.to])
        except Exception as exc:
            raise TransportError(f"failed to send email: {exc}") from exc
        finally:
            await self._quit(smtp)

        self.logger.info("Email sent to %s (subject: %s)", reply.to, reply.subject)
        return msg

    async def _quit(self, smtp: aiosmtplib.SMTP) -> None:
        try:
            if smtp.is_connected:
                await smtp.quit()
        except Exception as exc:
            self.logger.debug("SMTP quit failed: %s", exc)


def admin_reply_body(name: str, text: str, signature: str) -> str:
    """Wrap an operator's reply text with a greeting and a signature."""
    greeting = f"Hi {name}," if name else "Hi,"
    return f"{greeting}\n\n{text}\n\nBest regards,\n{signature}"


__all__ = [
    "ALTERNATIVE_BOUNDARY",
    "SMTPReplySender",
    "admin_reply_body",
    "build_message",
    "build_reply",
    "reply_subject",
    "thread_references",
]
