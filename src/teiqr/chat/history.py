"""Prompt assembly from persisted history and the current turn."""

from __future__ import annotations

from typing import Any, Sequence

from ..repository import MessageRecord
from .attachments import UserContent

TITLE_MAX_LENGTH = 50
TITLE_ELLIPSIS = "..."

PROMPT_ROLES = frozenset({"system", "user", "assistant"})


def derive_title(message: str) -> str:
    """Return the conversation title seeded from its first message."""

    if len(message) > TITLE_MAX_LENGTH:
        return message[:TITLE_MAX_LENGTH] + TITLE_ELLIPSIS
    return message


def build_prompt(
    system_prompt: str,
    history: Sequence[MessageRecord],
    current_content: UserContent,
    *,
    current_message_id: str | None = None,
    limit: int | None = None,
) -> list[dict[str, Any]]:
    """Build the ordered message list sent upstream.

    ``history`` is expected oldest first and may already contain the plain
    text copy of the current user message; that trailing entry is replaced by
    ``current_content`` so the last prompt entry is always the enriched turn.
    """

    prior = list(history)
    if prior and current_message_id is not None and prior[-1].get("id") == current_message_id:
        prior.pop()
    if limit is not None:
        prior = prior[-limit:] if limit > 0 else []

    messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for record in prior:
        role = record.get("role")
        if role not in PROMPT_ROLES:
            continue
        messages.append({"role": role, "content": record.get("content") or ""})
    messages.append({"role": "user", "content": current_content})
    return messages


__all__ = ["TITLE_MAX_LENGTH", "build_prompt", "derive_title"]
