"""Chat streaming API route."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, Response
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from ..auth import Identity, get_current_identity
from ..chat.persistence import ConversationNotFound, TurnPersistence
from ..chat.service import ChatTurnService
from ..config import Settings, get_settings
from ..openrouter import OpenRouterClient
from ..repository import ChatRepository
from ..schemas.chat import ChatTurnRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


def get_openrouter_client(request: Request) -> OpenRouterClient:
    return request.app.state.openrouter_client


def get_repository(request: Request) -> ChatRepository:
    return request.app.state.repository


def get_chat_service(
    settings: Settings = Depends(get_settings),
    repository: ChatRepository = Depends(get_repository),
    client: OpenRouterClient = Depends(get_openrouter_client),
) -> ChatTurnService:
    return ChatTurnService(settings, TurnPersistence(repository), client)


@router.post("/chat", response_model=None, status_code=200)
async def post_chat_turn(
    request: Request,
    identity: Identity | None = Depends(get_current_identity),
    service: ChatTurnService = Depends(get_chat_service),
    settings: Settings = Depends(get_settings),
) -> Response:
    """Persist a user turn and stream the assistant reply as SSE frames."""

    if identity is None:
        return PlainTextResponse("Unauthorized", status_code=401)

    try:
        payload = ChatTurnRequest.model_validate(await request.json())
    except (ValueError, ValidationError) as exc:
        logger.info("Rejected chat request body: %s", exc)
        return PlainTextResponse("Invalid request body", status_code=400)

    if not payload.message:
        return PlainTextResponse("Message is required", status_code=400)

    if any(
        item.size_bytes > settings.attachments_max_size_bytes for item in payload.files
    ):
        return PlainTextResponse("Attachment exceeds maximum size", status_code=400)

    try:
        turn = await service.prepare_turn(identity.id, payload)
    except ConversationNotFound:
        return PlainTextResponse("Conversation not found", status_code=404)
    except Exception as exc:
        logger.exception("Chat API error")
        return PlainTextResponse(str(exc) or "Internal server error", status_code=500)

    return EventSourceResponse(
        service.stream_turn(turn),
        headers=dict(SSE_HEADERS),
        sep="\n",
    )


__all__ = ["get_chat_service", "get_openrouter_client", "get_repository", "router"]
