"""Conversation history routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response

from ..auth import Identity, require_identity
from ..repository import ChatRepository, ConversationRecord
from ..schemas.chat import ConversationOut, MessageOut, RenameConversationRequest
from .chat import get_repository

router = APIRouter(prefix="/api/conversations", tags=["conversations"])


async def _owned_conversation(
    repository: ChatRepository, conversation_id: str, identity: Identity
) -> ConversationRecord:
    conversation = await repository.get_conversation(conversation_id)
    if conversation is None or conversation["user_id"] != identity.id:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


@router.get("", response_model=list[ConversationOut])
async def list_conversations(
    identity: Identity = Depends(require_identity),
    repository: ChatRepository = Depends(get_repository),
) -> list[ConversationRecord]:
    """Return the caller's conversations, most recently active first."""

    return await repository.list_conversations(identity.id)


@router.get("/{conversation_id}/messages", response_model=list[MessageOut])
async def list_messages(
    conversation_id: str,
    identity: Identity = Depends(require_identity),
    repository: ChatRepository = Depends(get_repository),
):
    await _owned_conversation(repository, conversation_id, identity)
    return await repository.get_messages(conversation_id)


@router.patch("/{conversation_id}", response_model=ConversationOut)
async def rename_conversation(
    conversation_id: str,
    payload: RenameConversationRequest,
    identity: Identity = Depends(require_identity),
    repository: ChatRepository = Depends(get_repository),
) -> ConversationRecord:
    title = payload.title.strip()
    if not title:
        raise HTTPException(status_code=400, detail="Title is required")
    conversation = await _owned_conversation(repository, conversation_id, identity)
    await repository.rename_conversation(conversation_id, title)
    conversation["title"] = title
    return conversation


@router.delete("/{conversation_id}", status_code=204)
async def delete_conversation(
    conversation_id: str,
    identity: Identity = Depends(require_identity),
    repository: ChatRepository = Depends(get_repository),
) -> Response:
    """Delete a conversation and its messages."""

    await _owned_conversation(repository, conversation_id, identity)
    await repository.delete_conversation(conversation_id)
    return Response(status_code=204)


__all__ = ["router"]
