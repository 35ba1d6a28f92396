"""Chat turn orchestration: persistence, prompt assembly, and streaming."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Protocol, Sequence

from ..config import Settings
from ..openrouter import CompletionResult, OpenRouterError
from ..schemas.chat import ChatTurnRequest
from .attachments import Attachment, normalize_user_content
from .events import Source
from .history import build_prompt, derive_title
from .persistence import TurnPersistence
from .reframer import (
    EventStream,
    SseEvent,
    SseReframer,
    conversation_frame,
    delta_frame,
    done_frame,
)

logger = logging.getLogger(__name__)


IMAGE_SYSTEM_PROMPT = (
    "You are an AI that generates images. Respond with a detailed description "
    "of the image that was requested."
)
IMAGE_UNSUPPORTED_REPLY = (
    "I understand you want to generate an image. However, direct image generation "
    "through OpenRouter is not currently available.\n\n"
    "For actual image generation, you would need to use a dedicated image generation "
    "service like DALL-E, Midjourney, or Stable Diffusion."
)


class CompletionClient(Protocol):
    def open_stream(
        self, messages: Sequence[dict[str, Any]], model: str | None = None
    ) -> EventStream:
        ...

    async def complete(
        self, messages: Sequence[dict[str, Any]], model: str | None = None
    ) -> CompletionResult:
        ...


@dataclass
class PreparedTurn:
    """State gathered before any upstream call is made."""

    conversation_id: str
    created_conversation: bool
    message: str
    model: str
    user_message_id: str
    files: list[Attachment] = field(default_factory=list)
    prompt: list[dict[str, Any]] = field(default_factory=list)


def is_image_model(model: str | None) -> bool:
    return model is not None and "image" in model.lower()


def image_failure_reply(reason: str) -> str:
    return (
        f"Sorry, image generation failed: {reason}. "
        "Please try again or use a different model."
    )


class ChatTurnService:
    """Run one chat turn end to end."""

    def __init__(
        self,
        settings: Settings,
        persistence: TurnPersistence,
        client: CompletionClient,
    ) -> None:
        self._settings = settings
        self._persistence = persistence
        self._client = client

    async def prepare_turn(self, user_id: str, request: ChatTurnRequest) -> PreparedTurn:
        """Persist the user side of the turn and build the upstream prompt.

        Any storage failure propagates before the upstream is contacted.
        Image-model turns skip prompt assembly; ``stream_turn`` builds it
        only if the image branch falls through to streaming.
        """

        message = request.message or ""
        model = request.model or self._settings.default_model

        conversation_id, created = await self._persistence.ensure_conversation(
            user_id, request.conversation_id, derive_title(message)
        )
        user_record = await self._persistence.insert_user_message(
            conversation_id,
            message,
            files=[item.metadata() for item in request.files],
        )

        turn = PreparedTurn(
            conversation_id=conversation_id,
            created_conversation=created,
            message=message,
            model=model,
            user_message_id=user_record["id"],
            files=list(request.files),
        )
        if not is_image_model(model):
            turn.prompt = await self._assemble_prompt(turn)
        return turn

    async def _assemble_prompt(self, turn: PreparedTurn) -> list[dict[str, Any]]:
        history = await self._persistence.load_history(
            turn.conversation_id, self._settings.history_limit + 1
        )
        content = await normalize_user_content(turn.message, turn.files)
        return build_prompt(
            self._settings.system_prompt,
            history,
            content,
            current_message_id=turn.user_message_id,
            limit=self._settings.history_limit,
        )

    async def stream_turn(self, turn: PreparedTurn) -> AsyncGenerator[SseEvent, None]:
        """Yield the SSE frames for a prepared turn."""

        if is_image_model(turn.model):
            fallback = await self._image_turn(turn)
            if fallback is not None:
                for frame in fallback:
                    yield frame
                return

        if not turn.prompt:
            turn.prompt = await self._assemble_prompt(turn)
        stream = self._client.open_stream(turn.prompt, turn.model)
        reframer = SseReframer(
            stream,
            self._persistence,
            conversation_id=turn.conversation_id,
            announce_conversation=turn.created_conversation,
            model=turn.model,
        )
        async for frame in reframer.events():
            yield frame

    async def _image_turn(self, turn: PreparedTurn) -> list[SseEvent] | None:
        """Answer image requests with an explanation; ``None`` falls through."""

        try:
            result = await self._client.complete(
                [
                    {"role": "system", "content": IMAGE_SYSTEM_PROMPT},
                    {"role": "user", "content": f"Generate an image: {turn.message}"},
                ],
                turn.model,
            )
        except OpenRouterError as exc:
            logger.error("Image generation error: %s", exc)
            reply = image_failure_reply(str(exc))
        else:
            if not result.text:
                return None
            reply = IMAGE_UNSUPPORTED_REPLY

        sources: list[Source] = []
        try:
            await self._persistence.complete_turn(
                turn.conversation_id, reply, sources, turn.model
            )
        except Exception:
            logger.exception(
                "Image reply for conversation %s was not saved", turn.conversation_id
            )

        frames: list[SseEvent] = []
        if turn.created_conversation:
            frames.append(conversation_frame(turn.conversation_id))
        frames.append(delta_frame(reply))
        frames.append(done_frame(sources))
        return frames


__all__ = [
    "ChatTurnService",
    "CompletionClient",
    "IMAGE_UNSUPPORTED_REPLY",
    "PreparedTurn",
    "image_failure_reply",
    "is_image_model",
]
