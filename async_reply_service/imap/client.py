"""Async IMAP client wrapper for reply polling."""

from __future__ import annotations

import asyncio
import re
import ssl
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..errors import MailConnectionError

if TYPE_CHECKING:
    from logging import Logger

_EXISTS_RE = re.compile(r"(\d+)\s+EXISTS", re.IGNORECASE)

DEFAULT_TIMEOUT = 30.0


@dataclass
class IMAPMessage:
    """Represents a fetched IMAP message."""

    seq: int
    raw: bytes


def _as_text(line: Any) -> str:
    if isinstance(line, (bytes, bytearray)):
        return bytes(line).decode("utf-8", errors="replace")
    return str(line)


def _quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class IMAPClient:
    """Async IMAP client wrapper using aioimaplib.

    Every server round-trip is bounded by ``timeout`` seconds; a timeout or a
    non-OK response is raised as :class:`MailConnectionError`.
    """

    def __init__(self, logger: Logger | None = None, timeout: float = DEFAULT_TIMEOUT):
        self._client: "aioimaplib.IMAP4_SSL | aioimaplib.IMAP4 | None" = None
        self._logger = logger
        self._timeout = timeout
        self._exists: int = 0

    async def _call(self, what: str, coro):
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise MailConnectionError(f"IMAP {what} timed out after {self._timeout:g}s") from exc
        except MailConnectionError:
            raise
        except Exception as exc:
            raise MailConnectionError(f"IMAP {what} failed: {exc}") from exc

    async def connect(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        use_ssl: bool = True,
    ) -> None:
        """Connect and authenticate to IMAP server."""
        import aioimaplib

        try:
            if use_ssl:
                ssl_context = ssl.create_default_context()
                self._client = aioimaplib.IMAP4_SSL(
                    host=host, port=port, ssl_context=ssl_context, timeout=self._timeout
                )
            else:
                self._client = aioimaplib.IMAP4(host=host, port=port, timeout=self._timeout)
        except Exception as exc:
            raise MailConnectionError(f"failed to connect to IMAP server {host}:{port}: {exc}") from exc

        await self._call("connect", self._client.wait_hello_from_server())
        response = await self._call("login", self._client.login(user, password))
        if response.result != "OK":
            raise MailConnectionError(f"IMAP login failed: {response.lines}")

        if self._logger:
            self._logger.debug("IMAP connected to %s:%d as %s", host, port, user)

    async def select_folder(self, folder: str = "INBOX", readonly: bool = False) -> int:
        """Select (or examine, when ``readonly``) a folder. Returns its message count."""
        if not self._client:
            raise RuntimeError("Not connected")

        if readonly:
            response = await self._call("examine", self._client.examine(folder))
        else:
            response = await self._call("select", self._client.select(folder))
        if response.result != "OK":
            raise MailConnectionError(f"Failed to select folder {folder}: {response.lines}")

        self._exists = 0
        for line in response.lines:
            match = _EXISTS_RE.search(_as_text(line))
            if match:
                self._exists = int(match.group(1))
                break

        if self._logger:
            self._logger.debug("Selected folder %s (readonly=%s), EXISTS=%d", folder, readonly, self._exists)

        return self._exists

    @property
    def exists(self) -> int:
        """Return the message count reported by the last select."""
        return self._exists

    async def search(self, *criteria: str) -> list[int]:
        """Run SEARCH and return the matching sequence numbers."""
        if not self._client:
            raise RuntimeError("Not connected")

        response = await self._call("search", self._client.search(*criteria, charset=None))
        if response.result != "OK":
            raise MailConnectionError(f"IMAP search failed: {response.lines}")

        seqs: list[int] = []
        # Last line is the tagged completion status
        for line in response.lines[:-1]:
            text = _as_text(line).strip()
            if text.upper().startswith("SEARCH"):
                text = text[len("SEARCH"):]
            for token in text.split():
                if token.isdigit():
                    seqs.append(int(token))
        return seqs

    async def search_unseen(self) -> list[int]:
        """Return the sequence numbers of messages without the ``\\Seen`` flag."""
        return await self.search("UNSEEN")

    async def search_message_id(self, message_id: str) -> list[int]:
        """Return the sequence numbers whose ``Message-ID`` header matches."""
        return await self.search("HEADER", "Message-ID", _quote(message_id))

    async def fetch(self, seq: int) -> IMAPMessage | None:
        """Fetch the full message without touching its flags."""
        if not self._client:
            raise RuntimeError("Not connected")

        response = await self._call("fetch", self._client.fetch(str(seq), "(BODY.PEEK[])"))
        if response.result != "OK":
            raise MailConnectionError(f"IMAP fetch of message {seq} failed: {response.lines}")

        # aioimaplib returns the literal as bytearray, protocol lines as bytes
        for item in response.lines:
            if isinstance(item, bytearray) and item:
                return IMAPMessage(seq=seq, raw=bytes(item))
        return None

    async def add_seen_flag(self, seqs: list[int]) -> None:
        """Add ``\\Seen`` to the given sequence numbers."""
        if not self._client:
            raise RuntimeError("Not connected")
        if not seqs:
            return

        message_set = ",".join(str(seq) for seq in seqs)
        response = await self._call("store", self._client.store(message_set, "+FLAGS", "(\\Seen)"))
        if response.result != "OK":
            raise MailConnectionError(f"IMAP store on {message_set} failed: {response.lines}")

    async def close(self) -> None:
        """Close IMAP connection."""
        if self._client:
            try:
                await asyncio.wait_for(self._client.logout(), timeout=self._timeout)
            except Exception as exc:
                if self._logger:
                    self._logger.debug("IMAP logout failed: %s", exc)
            self._client = None
            if self._logger:
                self._logger.debug("IMAP connection closed")


__all__ = ["IMAPClient", "IMAPMessage"]
