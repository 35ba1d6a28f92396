"""Translate completion stream events into client SSE frames."""

from __future__ import annotations

import json
import logging
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, Protocol, Sequence

from .events import Delta, Done, Source, StreamError, StreamEvent
from .persistence import TurnPersistence

logger = logging.getLogger(__name__)


SseEvent = dict[str, str]


class EventStream(Protocol):
    def __aiter__(self) -> AsyncIterator[StreamEvent]:
        ...

    async def aclose(self) -> None:
        ...


class ReframerState(str, Enum):
    START = "start"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    CLOSED = "closed"


def sse_frame(payload: dict[str, Any]) -> SseEvent:
    """Wrap a JSON payload for ``EventSourceResponse``."""

    return {"data": json.dumps(payload, ensure_ascii=False)}


def conversation_frame(conversation_id: str) -> SseEvent:
    return sse_frame({"type": "conversationId", "conversationId": conversation_id})


def delta_frame(content: str) -> SseEvent:
    return sse_frame({"type": "delta", "content": content})


def done_frame(sources: Sequence[Source]) -> SseEvent:
    return sse_frame(
        {
            "type": "done",
            "sources": [source.model_dump(exclude_none=True) for source in sources],
        }
    )


class SseReframer:
    """Drain a completion stream into SSE frames and persist the reply."""

    def __init__(
        self,
        stream: EventStream,
        persistence: TurnPersistence,
        *,
        conversation_id: str,
        announce_conversation: bool,
        model: str,
    ) -> None:
        self._stream = stream
        self._persistence = persistence
        self._conversation_id = conversation_id
        self._announce_conversation = announce_conversation
        self._model = model
        self._fragments: list[str] = []
        self.state = ReframerState.START

    @property
    def text(self) -> str:
        return "".join(self._fragments)

    async def events(self) -> AsyncGenerator[SseEvent, None]:
        """Yield SSE frames; raises if the upstream fails mid-stream."""

        try:
            if self._announce_conversation:
                yield conversation_frame(self._conversation_id)
            self.state = ReframerState.STREAMING

            async for event in self._stream:
                if isinstance(event, Delta):
                    self._fragments.append(event.text)
                    yield delta_frame(event.text)
                elif isinstance(event, Done):
                    self.state = ReframerState.FINALIZING
                    await self._finalize(event.sources)
                    yield done_frame(event.sources)
                    break
                elif isinstance(event, StreamError):
                    logger.error(
                        "Streaming error in conversation %s: %s",
                        self._conversation_id,
                        event.cause,
                    )
                    raise event.cause
        finally:
            self.state = ReframerState.CLOSED
            await self._stream.aclose()

    async def _finalize(self, sources: Sequence[Source]) -> None:
        try:
            await self._persistence.complete_turn(
                self._conversation_id, self.text, sources, self._model
            )
        except Exception:
            logger.exception(
                "Assistant reply for conversation %s was streamed but not saved",
                self._conversation_id,
            )


__all__ = [
    "ReframerState",
    "SseEvent",
    "SseReframer",
    "conversation_frame",
    "delta_frame",
    "done_frame",
    "sse_frame",
]
