"""Poll one tenant mailbox and turn customer emails into conversation replies."""

from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional, Protocol

from .errors import MarkReadError, MatchError, PersistError
from .imap.fetcher import IMAPFetcher
from .logger import get_logger
from .matcher import MessageMatcher, normalize_address
from .models import SENT_BY_CUSTOMER, IncomingEmail, MailServerConfig, PollResult

if TYPE_CHECKING:
    from logging import Logger

RECEIVED_AT_FORMAT = "%Y-%m-%d %H:%M:%S"


class Fetcher(Protocol):
    async def fetch_unseen(
        self, config: MailServerConfig, *, parse_errors: Optional[List[Exception]] = None
    ) -> List[IncomingEmail]: ...

    async def mark_as_read(self, config: MailServerConfig, message_ids: List[str]) -> int: ...


def format_reply_text(email: IncomingEmail) -> str:
    """Prefix the email body with its received timestamp."""
    text = email.body or email.html_body
    received = email.received_at.strftime(RECEIVED_AT_FORMAT) if email.received_at else "unknown"
    return f"[Email received: {received}]\n\n{text}"


async def poll_incoming_emails(
    config: MailServerConfig,
    matcher: MessageMatcher,
    *,
    fetcher: Optional[Fetcher] = None,
    logger: Optional[Logger] = None,
) -> PollResult:
    """Fetch unseen mail, append matched emails as replies and mark them read.

    Emails are handled one at a time. A lookup or write failure is recorded in
    :attr:`PollResult.errors` and the batch continues. Only emails whose reply
    was stored are marked read; unmatched emails stay unseen.

    Raises:
        MailConnectionError: When the mailbox cannot be fetched at all.
    """
    fetcher = fetcher or IMAPFetcher()
    logger = logger or get_logger("poller")
    result = PollResult()

    emails = await fetcher.fetch_unseen(config, parse_errors=result.errors)

    result.emails_checked = len(emails)
    logger.debug("Found %d unread emails to process", len(emails))

    processed: List[str] = []
    for email in emails:
        sender = normalize_address(email.sender)
        try:
            conversation_ids = await matcher.find_conversations_by_sender(sender)
        except Exception as exc:
            result.errors.append(MatchError(f"error finding messages for {sender}: {exc}"))
            continue

        if not conversation_ids:
            logger.info("No matching message found for email from %s (subject: %s)", sender, email.subject)
            continue

        # Newest conversation of this sender wins
        conversation_id = conversation_ids[0]

        try:
            await matcher.create_reply(conversation_id, format_reply_text(email), SENT_BY_CUSTOMER)
        except Exception as exc:
            result.errors.append(PersistError(f"error creating reply for message {conversation_id}: {exc}"))
            continue

        logger.info("Added email reply from %s to message %d", sender, conversation_id)
        result.replies_added += 1
        processed.append(email.message_id)

    targetable = [mid for mid in processed if mid]
    if len(targetable) != len(processed):
        result.errors.append(
            MarkReadError(
                f"{len(processed) - len(targetable)} processed emails have no Message-ID and cannot be marked as read"
            )
        )

    if targetable:
        try:
            await fetcher.mark_as_read(config, targetable)
        except Exception as exc:
            if isinstance(exc, MarkReadError):
                result.errors.append(exc)
            else:
                result.errors.append(MarkReadError(f"error marking emails as read: {exc}", failed_ids=targetable))
            failed = set(getattr(exc, "failed_ids", None) or targetable)
            result.marked_read = [mid for mid in targetable if mid not in failed]
        else:
            result.marked_read = list(targetable)
            logger.info("Marked %d emails as read", len(targetable))

    return result


__all__ = ["format_reply_text", "poll_incoming_emails", "RECEIVED_AT_FORMAT"]
