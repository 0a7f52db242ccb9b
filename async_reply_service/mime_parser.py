"""Turn raw RFC 5322 messages into :class:`IncomingEmail` values.

The parser is pure: no I/O and no logging. Envelope data is read from the
top-level headers; textual content comes from a depth-first walk of the MIME
tree where the first ``text/plain`` and the first ``text/html`` leaf win.
"""

from __future__ import annotations

import email
import email.policy
import re
from datetime import datetime, timezone
from email.message import Message
from email.utils import getaddresses, parsedate_to_datetime
from typing import Optional

from .errors import ParseError
from .models import IncomingEmail
from .text import strip_html

_WS_RE = re.compile(r"\s+")


def _header(msg: Message, name: str) -> str:
    try:
        value = msg.get(name)
    except (TypeError, ValueError, IndexError):
        # Malformed header that the policy cannot fold into a structured value
        value = None
        for key, raw in msg.raw_items():
            if key.lower() == name.lower():
                value = raw
                break
    if value is None:
        return ""
    return _WS_RE.sub(" ", str(value)).strip()


def _first_address(msg: Message, name: str) -> str:
    raw = _header(msg, name)
    if not raw:
        return ""
    for _display, addr in getaddresses([raw]):
        if addr:
            return addr.strip()
    return ""


def _parse_date(msg: Message, fallback: Optional[datetime]) -> datetime:
    raw = _header(msg, "Date")
    if raw:
        try:
            parsed = parsedate_to_datetime(raw)
        except (TypeError, ValueError, IndexError):
            parsed = None
        if parsed is not None:
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
    if fallback is not None:
        return fallback
    return datetime.now(timezone.utc)


def _decode_part(part: Message) -> str:
    """Return the textual payload of a leaf part, UTF-8 best-effort."""
    try:
        content = part.get_content()
    except (LookupError, KeyError, ValueError, AssertionError, UnicodeError):
        content = None
    if isinstance(content, str):
        return content
    payload = part.get_payload(decode=True)
    if payload is None:
        return ""
    if isinstance(payload, bytes):
        return payload.decode("utf-8", errors="replace")
    return str(payload)


def _extract_bodies(msg: Message) -> tuple[str, str]:
    plain: Optional[str] = None
    html: Optional[str] = None
    # walk() is depth-first, in document order, and includes msg itself
    for part in msg.walk():
        if part.is_multipart():
            continue
        if part.get_content_disposition() == "attachment":
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain" and plain is None:
            plain = _decode_part(part)
        elif content_type == "text/html" and html is None:
            html = _decode_part(part)
        if plain is not None and html is not None:
            break
    return plain or "", html or ""


def parse_message(raw: bytes | bytearray | str, received_at: Optional[datetime] = None) -> IncomingEmail:
    """Parse a raw message into an :class:`IncomingEmail`.

    Args:
        raw: Full message (headers and body) as fetched from the server.
        received_at: Timestamp used when the message carries no usable
            ``Date`` header. Defaults to the current UTC time.

    Raises:
        ParseError: If the input is empty or cannot be read as a message.
    """
    if not raw:
        raise ParseError("message body is empty")
    try:
        if isinstance(raw, str):
            msg = email.message_from_string(raw, policy=email.policy.default)
        else:
            msg = email.message_from_bytes(bytes(raw), policy=email.policy.default)
    except Exception as exc:
        raise ParseError(f"failed to read message: {exc}") from exc

    try:
        plain, html = _extract_bodies(msg)
    except Exception as exc:
        raise ParseError(f"failed to parse message parts: {exc}") from exc

    return IncomingEmail(
        sender=_first_address(msg, "From"),
        recipient=_first_address(msg, "To"),
        subject=_header(msg, "Subject"),
        plain_body=plain,
        html_body=html,
        message_id=_header(msg, "Message-ID"),
        in_reply_to=_header(msg, "In-Reply-To"),
        references=_header(msg, "References"),
        received_at=_parse_date(msg, received_at),
    )


__all__ = ["parse_message", "strip_html"]
