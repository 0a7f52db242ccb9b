"""Error taxonomy for the reply ingestion pipeline and the SMTP sender.

Only :class:`MailConnectionError` aborts a poll. Every other pipeline error is
collected into :attr:`PollResult.errors` and processing continues with the
next email.
"""

from __future__ import annotations


class ReplyServiceError(Exception):
    """Base class for errors raised by the service."""

    code = "reply_service_error"


class MailConnectionError(ReplyServiceError, ConnectionError):
    """Raised when an IMAP/SMTP server cannot be reached, authenticated or spoken to."""

    code = "connection_error"


class ParseError(ReplyServiceError, ValueError):
    """Raised when a fetched message body cannot be read at all."""

    code = "parse_error"


class MatchError(ReplyServiceError):
    """Raised when the conversation lookup for a sender fails."""

    code = "match_error"


class PersistError(ReplyServiceError):
    """Raised when a matched reply cannot be written to the store."""

    code = "persist_error"


class MarkReadError(ReplyServiceError):
    """Raised when processed emails cannot be flagged as seen."""

    code = "mark_read_error"

    def __init__(self, message: str, failed_ids: list[str] | None = None):
        super().__init__(message)
        self.failed_ids = list(failed_ids or [])


class TransportError(ReplyServiceError):
    """Raised when an outbound reply is rejected or cannot be transmitted."""

    code = "transport_error"


class TenantConfigurationError(ReplyServiceError, RuntimeError):
    """Raised when a tenant is unknown or lacks the mail settings an operation needs."""

    code = "tenant_configuration_error"

    def __init__(self, message: str = "Missing tenant mail configuration"):
        super().__init__(message)
