"""Contract between the poller and the conversation store."""

from __future__ import annotations

from typing import List, Protocol, runtime_checkable


def normalize_address(address: str | None) -> str:
    """Lowercase and trim an email address for matching."""
    return (address or "").strip().lower()


@runtime_checkable
class MessageMatcher(Protocol):
    """Lookup and append operations the poller needs from a conversation store."""

    async def find_conversations_by_sender(self, address: str) -> List[int]:
        """Return conversation ids whose sender equals ``address``, newest first.

        Matching is case-insensitive and ignores surrounding whitespace.
        """
        ...

    async def create_reply(self, conversation_id: int, text: str, sent_by: str) -> None:
        """Append a reply stamped with the current time. Raises on storage failure."""
        ...


__all__ = ["MessageMatcher", "normalize_address"]
