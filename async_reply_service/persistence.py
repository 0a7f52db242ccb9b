"""SQLite backed conversation store used by the reply poller."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiosqlite

from .matcher import normalize_address
from .models import SENT_BY_ADMIN, SENT_BY_CUSTOMER

VALID_SENDERS = {SENT_BY_ADMIN, SENT_BY_CUSTOMER}


def _utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S.%f")


class MessageStore:
    """Contact messages and their replies for one website.

    Implements :class:`async_reply_service.matcher.MessageMatcher`. Every
    operation opens its own connection, so concurrent polls never share one.
    """

    def __init__(self, db_path: str | Path):
        """Persist data to the SQLite file at ``db_path``.

        In-memory databases are rejected: each operation opens a fresh
        connection, and ``:memory:`` would give every one of them an empty
        database.
        """
        path = str(db_path or "")
        if not path or path == ":memory:" or path.startswith("file::memory:"):
            raise ValueError("MessageStore needs a database file path")
        self.db_path = path

    async def init_db(self) -> None:
        """Create the schema when missing."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    email TEXT NOT NULL,
                    message TEXT NOT NULL,
                    status TEXT DEFAULT 'unread',
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS message_replies (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id INTEGER NOT NULL REFERENCES messages(id) ON DELETE CASCADE,
                    reply_text TEXT NOT NULL,
                    sent_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    sent_by TEXT DEFAULT 'admin'
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_messages_email ON messages(email)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_messages_created_at ON messages(created_at)")
            await db.execute("CREATE INDEX IF NOT EXISTS idx_replies_message_id ON message_replies(message_id)")
            await db.commit()

    # Conversations ------------------------------------------------------------
    async def create_message(
        self,
        name: str,
        email: str,
        message: str,
        *,
        created_at: Optional[str] = None,
    ) -> int:
        """Store a contact form submission and return its id."""
        created = created_at or _utc_now()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO messages (name, email, message, status, created_at, updated_at)
                VALUES (?, ?, ?, 'unread', ?, ?)
                """,
                (name, email, message, created, created),
            )
            await db.commit()
            return int(cursor.lastrowid)

    async def get_message(self, message_id: int) -> Optional[Dict[str, Any]]:
        """Return a single conversation or ``None`` when it does not exist."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, name, email, message, status, created_at, updated_at
                FROM messages WHERE id=?
                """,
                (int(message_id),),
            ) as cur:
                row = await cur.fetchone()
                if not row:
                    return None
                cols = [c[0] for c in cur.description]
        return dict(zip(cols, row))

    async def find_conversations_by_sender(self, address: str) -> List[int]:
        """Return ids of conversations from ``address``, newest first."""
        email = normalize_address(address)
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT id FROM messages
                WHERE LOWER(TRIM(email)) = ?
                ORDER BY created_at DESC, id DESC
                """,
                (email,),
            ) as cur:
                rows = await cur.fetchall()
        return [int(row[0]) for row in rows]

    # Replies ------------------------------------------------------------------
    async def create_reply(self, conversation_id: int, text: str, sent_by: str) -> None:
        """Append a reply to a conversation, stamped with the current time."""
        if sent_by not in VALID_SENDERS:
            raise ValueError(f"sent_by must be one of {sorted(VALID_SENDERS)}, got {sent_by!r}")
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute(
                """
                INSERT INTO message_replies (message_id, reply_text, sent_at, sent_by)
                VALUES (?, ?, ?, ?)
                """,
                (int(conversation_id), text, _utc_now(), sent_by),
            )
            await db.commit()

    async def list_replies(self, message_id: int) -> List[Dict[str, Any]]:
        """Return the replies of a conversation in the order they were appended."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT id, message_id, reply_text, sent_at, sent_by
                FROM message_replies
                WHERE message_id=?
                ORDER BY sent_at ASC, id ASC
                """,
                (int(message_id),),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [dict(zip(cols, row)) for row in rows]


__all__ = ["MessageStore"]
