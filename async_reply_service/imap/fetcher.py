"""Fetch unseen tenant mail and flag processed mail as read."""

from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Iterable, List, Optional

from ..errors import MailConnectionError, MarkReadError, ParseError
from ..logger import get_logger
from ..mime_parser import parse_message
from ..models import IncomingEmail, MailServerConfig
from .client import DEFAULT_TIMEOUT, IMAPClient

if TYPE_CHECKING:
    from logging import Logger

INBOX = "INBOX"


class IMAPFetcher:
    """Run the two mailbox conversations of a poll: fetch and mark-as-read.

    Each call opens its own connection; sequence numbers are never carried
    from one connection to the next.
    """

    def __init__(
        self,
        *,
        logger: Logger | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        client_factory: Optional[Callable[..., IMAPClient]] = None,
    ):
        self.logger = logger or get_logger("imap")
        self.timeout = timeout
        self._client_factory = client_factory or IMAPClient

    def _new_client(self) -> IMAPClient:
        return self._client_factory(logger=self.logger, timeout=self.timeout)

    async def _open(self, config: MailServerConfig) -> IMAPClient:
        client = self._new_client()
        try:
            await client.connect(
                host=config.server,
                port=config.port,
                user=config.username,
                password=config.password,
                use_ssl=config.use_tls,
            )
        except BaseException:
            await client.close()
            raise
        return client

    async def fetch_unseen(
        self,
        config: MailServerConfig,
        *,
        parse_errors: Optional[List[Exception]] = None,
    ) -> List[IncomingEmail]:
        """Return every unseen INBOX message, parsed, leaving it unseen on the server.

        Messages that cannot be parsed are logged and skipped; when
        ``parse_errors`` is given they are appended to it as well.

        Raises:
            MailConnectionError: On any connection, login or protocol failure.
                No partial result is returned in that case.
        """
        try:
            client = await self._open(config)
        except MailConnectionError:
            raise
        except Exception as exc:
            raise MailConnectionError(f"failed to connect to IMAP server: {exc}") from exc

        try:
            total = await client.select_folder(INBOX, readonly=True)
            if total == 0:
                return []

            seqs = await client.search_unseen()
            if not seqs:
                return []

            self.logger.info("Found %d unread emails on %s", len(seqs), config.server)

            emails: List[IncomingEmail] = []
            for seq in seqs:
                fetched = await client.fetch(seq)
                if fetched is None:
                    self._skip(parse_errors, ParseError(f"message {seq}: message body is nil"))
                    continue
                try:
                    emails.append(parse_message(fetched.raw))
                except ParseError as exc:
                    self._skip(parse_errors, ParseError(f"message {seq}: {exc}"))
            return emails
        except MailConnectionError:
            raise
        except Exception as exc:
            raise MailConnectionError(f"failed to fetch messages: {exc}") from exc
        finally:
            await client.close()

    def _skip(self, parse_errors: Optional[List[Exception]], error: ParseError) -> None:
        self.logger.warning("Error parsing message: %s", error)
        if parse_errors is not None:
            parse_errors.append(error)

    async def mark_as_read(self, config: MailServerConfig, message_ids: Iterable[str]) -> int:
        """Flag the messages carrying the given ``Message-ID`` values as seen.

        Every id is attempted even when an earlier one fails; the failures are
        reported together at the end.

        Returns:
            The number of ids for which at least one message was flagged.

        Raises:
            MarkReadError: When the mailbox cannot be opened, or when one or
                more ids could not be flagged.
        """
        ids = [mid for mid in message_ids if mid]
        if not ids:
            return 0

        try:
            client = await self._open(config)
        except Exception as exc:
            raise MarkReadError(f"failed to connect to IMAP server: {exc}", failed_ids=ids) from exc

        marked = 0
        failed: List[str] = []
        try:
            try:
                await client.select_folder(INBOX, readonly=False)
            except Exception as exc:
                raise MarkReadError(f"failed to select {INBOX}: {exc}", failed_ids=ids) from exc

            for message_id in ids:
                try:
                    seqs = await client.search_message_id(message_id)
                    if not seqs:
                        self.logger.warning("No message found on server for Message-ID %s", message_id)
                        failed.append(message_id)
                        continue
                    await client.add_seen_flag(seqs)
                    marked += 1
                except MailConnectionError as exc:
                    self.logger.warning("Failed to mark message %s as read: %s", message_id, exc)
                    failed.append(message_id)
        finally:
            await client.close()

        if failed:
            raise MarkReadError(
                f"failed to mark {len(failed)} of {len(ids)} emails as read: {', '.join(failed)}",
                failed_ids=failed,
            )
        return marked


__all__ = ["IMAPFetcher"]
