"""Value objects shared by the fetcher, the poller and the SMTP sender."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .text import strip_html

SENT_BY_ADMIN = "admin"
SENT_BY_CUSTOMER = "customer"


class MailServerConfig(BaseModel):
    """Connection settings for one IMAP or SMTP endpoint.

    Field aliases follow the ``email.imap`` / ``email.smtp`` blocks of the
    per-site ``config.json`` files.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    server: Annotated[str, Field(default="", description="Server hostname")]
    port: Annotated[int, Field(default=0, ge=0, description="Server port (0 = not configured)")]
    username: Annotated[str, Field(default="", description="Login user")]
    password: Annotated[str, Field(default="", description="Login password")]
    use_tls: Annotated[bool, Field(default=False, alias="useTLS", description="Connect over TLS")]

    @property
    def is_configured(self) -> bool:
        """Return ``True`` when both a host and a non-zero port are set."""
        return bool(self.server.strip()) and self.port != 0


@dataclass(frozen=True)
class IncomingEmail:
    """One fetched and parsed inbound message."""

    sender: str = ""
    recipient: str = ""
    subject: str = ""
    plain_body: str = ""
    html_body: str = ""
    message_id: str = ""
    in_reply_to: str = ""
    references: str = ""
    received_at: Optional[datetime] = None

    @property
    def body(self) -> str:
        """Primary text: the plain part, else the HTML part with tags stripped."""
        if self.plain_body:
            return self.plain_body
        if self.html_body:
            return strip_html(self.html_body)
        return ""


@dataclass
class PollResult:
    """Summary of one poll of one tenant mailbox."""

    emails_checked: int = 0
    replies_added: int = 0
    errors: List[Exception] = field(default_factory=list)
    marked_read: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "emails_checked": self.emails_checked,
            "replies_added": self.replies_added,
            "errors": [str(err) for err in self.errors],
            "marked_read": list(self.marked_read),
        }


@dataclass
class OutboundReply:
    """An outbound message ready to be composed, threading headers included."""

    from_address: str
    to: str
    subject: str
    body: str = ""
    html_body: str = ""
    from_name: str = ""
    reply_to: str = ""
    in_reply_to: str = ""
    references: str = ""
