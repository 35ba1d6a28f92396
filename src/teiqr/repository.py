"""SQLite-backed repository for conversations, messages, and profiles."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence
from uuid import uuid4

import aiosqlite

ConversationRecord = dict[str, Any]
MessageRecord = dict[str, Any]
ProfileRecord = dict[str, Any]


def _utcnow_iso() -> str:
    """Return the current UTC time with microsecond precision."""

    return datetime.now(timezone.utc).isoformat()


def _encode_json(value: Sequence[Any] | None) -> str | None:
    if not value:
        return None
    return json.dumps(list(value))


def _decode_json(value: str | None) -> list[Any]:
    if not value:
        return []
    try:
        decoded = json.loads(value)
    except json.JSONDecodeError:
        return []
    return decoded if isinstance(decoded, list) else []


class ChatRepository:
    """Persist conversations, their messages, and user profiles."""

    def __init__(self, database_path: Path):
        self._path = database_path
        self._connection: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open the SQLite connection and ensure tables exist."""

        if self._connection is not None:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA journal_mode=WAL;")
        await self._connection.execute("PRAGMA foreign_keys=ON;")
        await self._create_schema()

    async def _create_schema(self) -> None:
        assert self._connection is not None
        await self._connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                sources TEXT,
                model TEXT,
                files TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                username TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_conversations_user_id ON conversations(user_id);
            CREATE INDEX IF NOT EXISTS idx_messages_conversation_id ON messages(conversation_id, created_at);
            """
        )
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    # Conversations -----------------------------------------------------

    async def create_conversation(self, user_id: str, title: str) -> ConversationRecord:
        """Insert a new conversation and return the stored row."""

        assert self._connection is not None
        conversation_id = uuid4().hex
        now = _utcnow_iso()
        await self._connection.execute(
            """
            INSERT INTO conversations(id, user_id, title, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (conversation_id, user_id, title, now, now),
        )
        await self._connection.commit()
        return {
            "id": conversation_id,
            "user_id": user_id,
            "title": title,
            "created_at": now,
            "updated_at": now,
        }

    async def get_conversation(self, conversation_id: str) -> ConversationRecord | None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT id, user_id, title, created_at, updated_at
            FROM conversations
            WHERE id = ?
            LIMIT 1
            """,
            (conversation_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return dict(row) if row is not None else None

    async def list_conversations(self, user_id: str) -> list[ConversationRecord]:
        """Return a user's conversations, most recently updated first."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT id, user_id, title, created_at, updated_at
            FROM conversations
            WHERE user_id = ?
            ORDER BY updated_at DESC, rowid DESC
            """,
            (user_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [dict(row) for row in rows]

    async def rename_conversation(self, conversation_id: str, title: str) -> bool:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "UPDATE conversations SET title = ? WHERE id = ?",
            (title, conversation_id),
        )
        await self._connection.commit()
        updated = cursor.rowcount > 0
        await cursor.close()
        return updated

    async def touch_conversation(self, conversation_id: str) -> None:
        """Set ``updated_at`` to the current time."""

        assert self._connection is not None
        await self._connection.execute(
            "UPDATE conversations SET updated_at = ? WHERE id = ?",
            (_utcnow_iso(), conversation_id),
        )
        await self._connection.commit()

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Remove a conversation together with its messages."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            "DELETE FROM conversations WHERE id = ?", (conversation_id,)
        )
        await self._connection.commit()
        deleted = cursor.rowcount > 0
        await cursor.close()
        return deleted

    # Messages ----------------------------------------------------------

    async def add_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        *,
        sources: Sequence[dict[str, Any]] | None = None,
        model: str | None = None,
        files: Sequence[dict[str, Any]] | None = None,
    ) -> MessageRecord:
        """Persist a single chat message."""

        assert self._connection is not None
        message_id = uuid4().hex
        created_at = _utcnow_iso()
        await self._connection.execute(
            """
            INSERT INTO messages(
                id,
                conversation_id,
                role,
                content,
                sources,
                model,
                files,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message_id,
                conversation_id,
                role,
                content,
                _encode_json(sources),
                model,
                _encode_json(files),
                created_at,
            ),
        )
        await self._connection.commit()
        return {
            "id": message_id,
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "sources": list(sources or []),
            "model": model,
            "files": list(files or []),
            "created_at": created_at,
        }

    async def get_messages(self, conversation_id: str) -> list[MessageRecord]:
        """Return all messages of a conversation in creation order."""

        assert self._connection is not None
        cursor = await self._connection.execute(
            """
            SELECT id, conversation_id, role, content, sources, model, files, created_at
            FROM messages
            WHERE conversation_id = ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (conversation_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [self._row_to_message(row) for row in rows]

    async def get_recent_messages(
        self, conversation_id: str, limit: int
    ) -> list[MessageRecord]:
        """Return the ``limit`` most recent messages, oldest first."""

        assert self._connection is not None
        if limit <= 0:
            return []
        cursor = await self._connection.execute(
            """
            SELECT id, conversation_id, role, content, sources, model, files, created_at
            FROM messages
            WHERE conversation_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (conversation_id, limit),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [self._row_to_message(row) for row in reversed(rows)]

    @staticmethod
    def _row_to_message(row: aiosqlite.Row) -> MessageRecord:
        return {
            "id": row["id"],
            "conversation_id": row["conversation_id"],
            "role": row["role"],
            "content": row["content"],
            "sources": _decode_json(row["sources"]),
            "model": row["model"],
            "files": _decode_json(row["files"]),
            "created_at": row["created_at"],
        }

    # Profiles ----------------------------------------------------------

    async def get_profile(self, user_id: str) -> ProfileRecord | None:
        assert self._connection is not None
        cursor = await self._connection.execute(
            "SELECT id, username, created_at, updated_at FROM profiles WHERE id = ?",
            (user_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return dict(row) if row is not None else None

    async def upsert_profile(self, user_id: str, username: str | None) -> ProfileRecord:
        """Create or update the profile row for a user."""

        assert self._connection is not None
        now = _utcnow_iso()
        await self._connection.execute(
            """
            INSERT INTO profiles(id, username, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                username = excluded.username,
                updated_at = excluded.updated_at
            """,
            (user_id, username, now, now),
        )
        await self._connection.commit()
        profile = await self.get_profile(user_id)
        assert profile is not None
        return profile


__all__ = [
    "ChatRepository",
    "ConversationRecord",
    "MessageRecord",
    "ProfileRecord",
]
