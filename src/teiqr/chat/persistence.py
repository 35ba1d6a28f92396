"""Conversation and message writes performed around a chat turn."""

from __future__ import annotations

import logging
from typing import Any, Sequence

import aiosqlite

from ..repository import ChatRepository, MessageRecord
from .events import Source

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when the persistence backend rejects a read or write."""


class ConversationNotFound(LookupError):
    """Raised when a conversation is missing or owned by another user."""


class TurnPersistence:
    """Own the database side effects of a single chat turn."""

    def __init__(self, repository: ChatRepository) -> None:
        self._repo = repository

    async def ensure_conversation(
        self,
        user_id: str,
        conversation_id: str | None,
        seed_title: str,
    ) -> tuple[str, bool]:
        """Return ``(conversation_id, created)``, creating the row on demand."""

        try:
            if conversation_id:
                existing = await self._repo.get_conversation(conversation_id)
                if existing is None or existing["user_id"] != user_id:
                    raise ConversationNotFound(conversation_id)
                return conversation_id, False

            record = await self._repo.create_conversation(user_id, seed_title)
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to create conversation: {exc}") from exc
        logger.info("Created conversation %s for user %s", record["id"], user_id)
        return record["id"], True

    async def insert_user_message(
        self,
        conversation_id: str,
        text: str,
        *,
        files: Sequence[dict[str, Any]] | None = None,
    ) -> MessageRecord:
        try:
            return await self._repo.add_message(
                conversation_id, "user", text, files=files
            )
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to save user message: {exc}") from exc

    async def insert_assistant_message(
        self,
        conversation_id: str,
        text: str,
        sources: Sequence[Source],
        model: str,
    ) -> MessageRecord:
        try:
            return await self._repo.add_message(
                conversation_id,
                "assistant",
                text,
                sources=[source.model_dump(exclude_none=True) for source in sources],
                model=model,
            )
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to save assistant message: {exc}") from exc

    async def touch_conversation(self, conversation_id: str) -> None:
        try:
            await self._repo.touch_conversation(conversation_id)
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to update conversation: {exc}") from exc

    async def complete_turn(
        self,
        conversation_id: str,
        text: str,
        sources: Sequence[Source],
        model: str,
    ) -> None:
        """Store the assistant reply, then bump the conversation timestamp."""

        await self.insert_assistant_message(conversation_id, text, sources, model)
        await self.touch_conversation(conversation_id)

    async def load_history(
        self, conversation_id: str, limit: int
    ) -> list[MessageRecord]:
        """Return up to ``limit`` recent messages, oldest first."""

        try:
            return await self._repo.get_recent_messages(conversation_id, limit)
        except aiosqlite.Error as exc:
            raise StorageError(f"Failed to load history: {exc}") from exc


__all__ = ["ConversationNotFound", "StorageError", "TurnPersistence"]
