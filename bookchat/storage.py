# bookchat/storage.py
"""
Per-user chat persistence: daily usage counter, transcript and preferences.

Every call is best effort. Errors are logged and the call returns its
default (0, an empty list, ``None``). When SQLite reports that a table
does not exist the store marks itself unavailable and every later call
returns its default straight away, without touching the database again.
"""

import asyncio
import json
import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import aiosqlite

from .catalog.schemas import Book
from .config import config
from .models import Message, UsageRecord


logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS chat_messages (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
        content TEXT NOT NULL,
        books TEXT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_usage (
        user_id TEXT NOT NULL,
        date TEXT NOT NULL,
        count INTEGER NOT NULL DEFAULT 0,
        UNIQUE (user_id, date)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_preferences (
        user_id TEXT PRIMARY KEY,
        has_seen_welcome INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_chat_messages_user_created ON chat_messages(user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_chat_usage_user_date ON chat_usage(user_id, date)",
]


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


def _is_missing_table(exc: Exception) -> bool:
    return isinstance(exc, aiosqlite.OperationalError) and "no such table" in str(exc).lower()


class ChatStore:
    """SQLite-backed store for usage counters, messages and preferences."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        today: Callable[[], date] = utc_today,
        timeout: Optional[float] = None,
        history_limit: Optional[int] = None,
    ) -> None:
        self.db_path = Path(db_path or config.CHAT_DB_PATH)
        self.today = today
        self.timeout = timeout or config.STORE_TIMEOUT
        self.history_limit = history_limit or config.HISTORY_LOAD_LIMIT
        self.unavailable = False

    def _connect(self) -> aiosqlite.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return aiosqlite.connect(self.db_path)

    async def init_db(self) -> None:
        """Create the tables if they do not exist yet."""
        async with self._connect() as db:
            for statement in SCHEMA:
                await db.execute(statement)
            await db.commit()
        self.unavailable = False
        logger.info("Chat store initialised at %s", self.db_path)

    async def _run(self, name: str, default: T, operation: Callable[[], Awaitable[T]]) -> T:
        if self.unavailable:
            return default
        try:
            return await asyncio.wait_for(operation(), self.timeout)
        except Exception as exc:
            if _is_missing_table(exc):
                self.unavailable = True
                logger.error("Chat tables missing (%s); disabling chat persistence for this session", exc)
            else:
                logger.warning("Chat store %s failed: %s", name, exc)
            return default

    async def get_usage_record(self, user_id: str) -> Optional[UsageRecord]:
        if not user_id:
            return None
        day = self.today()

        async def op() -> Optional[UsageRecord]:
            async with self._connect() as db:
                cursor = await db.execute(
                    "SELECT count FROM chat_usage WHERE user_id = ? AND date = ?",
                    (user_id, day.isoformat()),
                )
                row = await cursor.fetchone()
            if row is None:
                return None
            return UsageRecord(user_id=user_id, day=day, count=row[0])

        return await self._run("usage read", None, op)

    async def get_usage_today(self, user_id: str) -> int:
        record = await self.get_usage_record(user_id)
        return record.count if record else 0

    async def increment_usage(self, user_id: str, current_count: int) -> int:
        """Store ``current_count + 1`` for today; on failure return ``current_count``."""
        if not user_id:
            return current_count
        day = self.today().isoformat()
        new_count = current_count + 1

        async def op() -> int:
            async with self._connect() as db:
                await db.execute(
                    """
                    INSERT INTO chat_usage (user_id, date, count) VALUES (?, ?, ?)
                    ON CONFLICT (user_id, date) DO UPDATE SET count = excluded.count
                    """,
                    (user_id, day, new_count),
                )
                await db.commit()
            return new_count

        return await self._run("usage update", current_count, op)

    async def load_history(self, user_id: str) -> List[Message]:
        """The most recent messages for ``user_id``, oldest first."""
        if not user_id:
            return []

        async def op() -> List[Message]:
            async with self._connect() as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    """
                    SELECT id, role, content, books, created_at FROM chat_messages
                    WHERE user_id = ?
                    ORDER BY created_at DESC, rowid DESC
                    LIMIT ?
                    """,
                    (user_id, self.history_limit),
                )
                rows = await cursor.fetchall()
            return [_row_to_message(row) for row in reversed(rows)]

        return await self._run("history load", [], op)

    async def append_message(self, user_id: str, message: Message) -> None:
        if not user_id:
            return
        books = (
            json.dumps([b.model_dump(mode="json") for b in message.books])
            if message.books
            else None
        )

        async def op() -> None:
            async with self._connect() as db:
                await db.execute(
                    """
                    INSERT INTO chat_messages (id, user_id, role, content, books, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (message.id, user_id, message.role, message.content, books,
                     message.created_at.isoformat()),
                )
                await db.commit()

        await self._run("message save", None, op)

    async def has_seen_welcome(self, user_id: str) -> bool:
        if not user_id:
            return False

        async def op() -> bool:
            async with self._connect() as db:
                cursor = await db.execute(
                    "SELECT has_seen_welcome FROM chat_preferences WHERE user_id = ?",
                    (user_id,),
                )
                row = await cursor.fetchone()
            return bool(row and row[0])

        return await self._run("preference read", False, op)

    async def mark_welcome_seen(self, user_id: str) -> None:
        if not user_id:
            return

        async def op() -> None:
            async with self._connect() as db:
                await db.execute(
                    """
                    INSERT INTO chat_preferences (user_id, has_seen_welcome) VALUES (?, 1)
                    ON CONFLICT (user_id) DO UPDATE SET has_seen_welcome = 1
                    """,
                    (user_id,),
                )
                await db.commit()

        await self._run("preference update", None, op)


def _row_to_message(row: Any) -> Message:
    books = None
    if row["books"]:
        books = [Book.model_validate(b) for b in json.loads(row["books"])]
    return Message(
        id=row["id"],
        role=row["role"],
        content=row["content"],
        books=books,
        created_at=datetime.fromisoformat(row["created_at"]),
    )
