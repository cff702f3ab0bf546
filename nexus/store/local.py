"""LocalStore — aiosqlite persistence for chats, messages, memories and preferences."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

import aiosqlite

from nexus.config import settings
from nexus.errors import PersistenceError
from nexus.store.models import (
    Conversation,
    ExportedDocument,
    Memory,
    Message,
    Preferences,
    utc_now,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable
    from pathlib import Path

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS chats (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        provider_id TEXT NOT NULL,
        model_id TEXT NOT NULL,
        memory_enabled INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL,
        web_result TEXT,
        export TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages (chat_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS memories (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS preferences (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
)

_CHAT_COLUMNS = "id, title, provider_id, model_id, memory_enabled, created_at, updated_at"
_MESSAGE_COLUMNS = "id, chat_id, role, content, created_at, web_result, export"
_MEMORY_COLUMNS = "id, kind, title, content, enabled, created_at"

_UPSERT_CHAT = f"""
    INSERT INTO chats ({_CHAT_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET
        title = excluded.title,
        provider_id = excluded.provider_id,
        model_id = excluded.model_id,
        memory_enabled = excluded.memory_enabled,
        updated_at = excluded.updated_at
"""


class LocalStore:
    """Durable local store, authoritative for offline operation.

    Reads may run concurrently. Writes are applied one at a time behind a
    lock so a chat and its messages are never left half-written. Pass an
    explicit *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._initialised = False
        self._write_lock = asyncio.Lock()

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path))
        await db.execute("PRAGMA foreign_keys = ON")
        if not self._initialised:
            for statement in _SCHEMA:
                await db.execute(statement)
            await db.commit()
            self._initialised = True
        return db

    @asynccontextmanager
    async def _reading(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            db = await self._connect()
        except (aiosqlite.Error, OSError) as exc:
            msg = f"Could not open local store: {exc}"
            raise PersistenceError(msg) from exc
        try:
            yield db
        except aiosqlite.Error as exc:
            msg = f"Local read failed: {exc}"
            raise PersistenceError(msg) from exc
        finally:
            await db.close()

    @asynccontextmanager
    async def _writing(self) -> AsyncIterator[aiosqlite.Connection]:
        """Serialize a write transaction; commit on success, roll back on error."""
        async with self._write_lock, self._reading() as db:
            try:
                yield db
                await db.commit()
            except aiosqlite.Error as exc:
                await db.rollback()
                msg = f"Local write failed: {exc}"
                raise PersistenceError(msg) from exc

    # -- Chats -----------------------------------------------------------------

    async def save_chat(self, chat: Conversation) -> Conversation:
        """Insert or replace a chat row. Returns the same chat object."""
        async with self._writing() as db:
            await db.execute(_UPSERT_CHAT, chat.to_row())
        return chat

    async def get_chat(self, chat_id: str) -> Conversation | None:
        async with self._reading() as db:
            cursor = await db.execute(f"SELECT {_CHAT_COLUMNS} FROM chats WHERE id = ?", (chat_id,))
            row = await cursor.fetchone()
            return Conversation.from_row(row) if row else None

    async def list_chats(self) -> list[Conversation]:
        """All chats, most recently updated first."""
        async with self._reading() as db:
            cursor = await db.execute(f"SELECT {_CHAT_COLUMNS} FROM chats ORDER BY updated_at DESC")
            return [Conversation.from_row(row) for row in await cursor.fetchall()]

    async def delete_chat(self, chat_id: str) -> bool:
        """Delete a chat and its messages. Returns True if the chat existed."""
        async with self._writing() as db:
            await db.execute("DELETE FROM messages WHERE chat_id = ?", (chat_id,))
            cursor = await db.execute("DELETE FROM chats WHERE id = ?", (chat_id,))
            deleted = cursor.rowcount > 0
        if deleted:
            logger.info("Deleted chat %s", chat_id)
        return deleted

    async def replace_chats(self, chats: Iterable[Conversation]) -> None:
        """Make *chats* the complete chat set, dropping others with their messages."""
        chats = list(chats)
        keep = [chat.id for chat in chats]
        async with self._writing() as db:
            placeholders = ", ".join("?" for _ in keep)
            where = f"WHERE chat_id NOT IN ({placeholders})" if keep else ""
            await db.execute(f"DELETE FROM messages {where}", keep)
            where = f"WHERE id NOT IN ({placeholders})" if keep else ""
            await db.execute(f"DELETE FROM chats {where}", keep)
            await db.executemany(_UPSERT_CHAT, [chat.to_row() for chat in chats])

    # -- Messages --------------------------------------------------------------

    async def add_message(self, message: Message) -> Message:
        """Append a message and bump its chat's ``updated_at``.

        Raises:
            PersistenceError: The chat does not exist or the id is taken.
        """
        async with self._writing() as db:
            await db.execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                message.to_row(),
            )
            await db.execute(
                "UPDATE chats SET updated_at = ? WHERE id = ?",
                (utc_now(), message.conversation_id),
            )
        return message

    async def list_messages(self, chat_id: str) -> list[Message]:
        """Messages of one chat in creation order."""
        async with self._reading() as db:
            cursor = await db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE chat_id = ? "
                "ORDER BY created_at, rowid",
                (chat_id,),
            )
            return [Message.from_row(row) for row in await cursor.fetchall()]

    async def attach_export(self, message_id: str, export: ExportedDocument) -> bool:
        """Record an exported document on a committed message. Content is untouched."""
        async with self._writing() as db:
            cursor = await db.execute(
                "UPDATE messages SET export = ? WHERE id = ?",
                (export.model_dump_json(), message_id),
            )
            return cursor.rowcount > 0

    # -- Memories --------------------------------------------------------------

    async def save_memory(self, memory: Memory) -> Memory:
        async with self._writing() as db:
            await db.execute(
                f"INSERT OR REPLACE INTO memories ({_MEMORY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                memory.to_row(),
            )
        return memory

    async def get_memory(self, memory_id: str) -> Memory | None:
        async with self._reading() as db:
            cursor = await db.execute(
                f"SELECT {_MEMORY_COLUMNS} FROM memories WHERE id = ?", (memory_id,)
            )
            row = await cursor.fetchone()
            return Memory.from_row(row) if row else None

    async def list_memories(self, *, enabled_only: bool = False) -> list[Memory]:
        """All memories, newest first."""
        where = "WHERE enabled = 1 " if enabled_only else ""
        async with self._reading() as db:
            cursor = await db.execute(
                f"SELECT {_MEMORY_COLUMNS} FROM memories {where}ORDER BY created_at DESC"
            )
            return [Memory.from_row(row) for row in await cursor.fetchall()]

    async def set_memory_enabled(self, memory_id: str, enabled: bool) -> bool:
        """Toggle one memory. Returns True if a row was updated."""
        async with self._writing() as db:
            cursor = await db.execute(
                "UPDATE memories SET enabled = ? WHERE id = ?", (int(enabled), memory_id)
            )
            return cursor.rowcount > 0

    async def delete_memory(self, memory_id: str) -> bool:
        async with self._writing() as db:
            cursor = await db.execute("DELETE FROM memories WHERE id = ?", (memory_id,))
            return cursor.rowcount > 0

    async def replace_memories(self, memories: Iterable[Memory]) -> None:
        """Make *memories* the complete memory set."""
        async with self._writing() as db:
            await db.execute("DELETE FROM memories")
            await db.executemany(
                f"INSERT INTO memories ({_MEMORY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                [memory.to_row() for memory in memories],
            )

    # -- Preferences -----------------------------------------------------------

    async def load_preferences(self) -> Preferences:
        async with self._reading() as db:
            cursor = await db.execute("SELECT key, value FROM preferences")
            rows = await cursor.fetchall()
        if not any(row[0] == "prompt_mode" for row in rows):
            rows = [*rows, ("prompt_mode", json.dumps(settings.default_prompt_mode))]
        return Preferences.from_rows(rows)

    async def save_preferences(self, preferences: Preferences) -> Preferences:
        async with self._writing() as db:
            await db.executemany(
                "INSERT OR REPLACE INTO preferences (key, value) VALUES (?, ?)",
                preferences.to_rows(),
            )
        return preferences
