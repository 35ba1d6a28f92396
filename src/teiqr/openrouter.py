"""OpenRouter chat completion client and stream parser."""

from __future__ import annotations

import json
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Sequence

import httpx
from fastapi import status

from .chat.events import Delta, Done, Source, StreamError, StreamEvent
from .config import Settings

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

PromptMessage = dict[str, Any]


class OpenRouterError(Exception):
    """Wrap transport or API failures when communicating with OpenRouter."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail


@dataclass
class CompletionResult:
    """A non-streaming completion."""

    text: str
    sources: list[Source] = field(default_factory=list)


class CompletionStream:
    """Lazy, single-pass sequence of stream events for one completion.

    The HTTP request is sent on the first pull. Each pull reads upstream
    chunks until at least one event is available. Once a terminal event
    (``Done`` or ``StreamError``) has been produced the response is closed and
    further pulls raise ``StopAsyncIteration``.
    """

    def __init__(self, http_client: httpx.AsyncClient, request: httpx.Request):
        self._http = http_client
        self._request = request
        self._response: httpx.Response | None = None
        self._chunks: AsyncIterator[str] | None = None
        self._pending: deque[StreamEvent] = deque()
        self._buffer = ""
        self._started = False
        self._finished = False

    def __aiter__(self) -> "CompletionStream":
        return self

    async def __anext__(self) -> StreamEvent:
        if not self._started:
            self._started = True
            await self._open()
        while not self._pending:
            if self._finished:
                raise StopAsyncIteration
            await self._pull()
        return self._pending.popleft()

    async def aclose(self) -> None:
        """Stop the stream and release the upstream connection."""

        self._started = True
        self._pending.clear()
        await self._release()

    async def _release(self) -> None:
        self._finished = True
        response, self._response = self._response, None
        self._chunks = None
        if response is not None:
            await response.aclose()

    async def _open(self) -> None:
        try:
            response = await self._http.send(self._request, stream=True)
        except httpx.HTTPError as exc:
            await self._fail(OpenRouterError(status.HTTP_502_BAD_GATEWAY, str(exc)))
            return

        self._response = response
        if response.status_code >= 400:
            body = await response.aread()
            detail = extract_error_detail(body)
            logger.error(
                "OpenRouter returned HTTP %s: %s", response.status_code, detail
            )
            await self._fail(OpenRouterError(response.status_code, detail))
            return

        self._chunks = response.aiter_text()

    async def _pull(self) -> None:
        assert self._chunks is not None
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            if self._buffer:
                line, self._buffer = self._buffer, ""
                self._handle_line(line)
            if not self._finished:
                # Connection closed without a sentinel; still finalize.
                self._pending.append(Done(sources=[]))
            await self._release()
            return
        except httpx.HTTPError as exc:
            await self._fail(OpenRouterError(status.HTTP_502_BAD_GATEWAY, str(exc)))
            return

        self._buffer += chunk
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        for line in lines:
            self._handle_line(line)
            if self._finished:
                await self._release()
                return

    def _handle_line(self, raw_line: str) -> None:
        line = raw_line.rstrip("\r")
        field_name, sep, value = line.partition(":")
        if not sep or field_name != "data":
            # Blank separators, comments (": OPENROUTER PROCESSING"), other fields
            return
        data = value[1:] if value.startswith(" ") else value

        if data == DONE_SENTINEL:
            self._pending.append(Done(sources=[]))
            self._finished = True
            return

        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            if data.strip():
                logger.warning("Error parsing SSE data: %s. Data: %r", exc, data)
            return

        if not isinstance(payload, dict):
            return

        # Mid-stream failures carry both ``error`` and ``choices``.
        error = payload.get("error")
        if error:
            logger.error("OpenRouter API error: %s", error)
            message = error.get("message") if isinstance(error, dict) else error
            code = error.get("code") if isinstance(error, dict) else None
            status_code = code if isinstance(code, int) else status.HTTP_502_BAD_GATEWAY
            self._terminate(OpenRouterError(status_code, message or "API error"))
            return

        choices = payload.get("choices")
        if isinstance(choices, list) and choices:
            first = choices[0] if isinstance(choices[0], dict) else {}
            delta = first.get("delta") or {}
            content = delta.get("content") if isinstance(delta, dict) else None
            if isinstance(content, str) and content:
                self._pending.append(Delta(text=content))
            if first.get("finish_reason") == "error":
                logger.error("OpenRouter stream finished with an error")
                self._terminate(
                    OpenRouterError(
                        status.HTTP_502_BAD_GATEWAY, "Upstream finished with an error"
                    )
                )

    def _terminate(self, error: OpenRouterError) -> None:
        self._pending.append(StreamError(cause=error))
        self._finished = True

    async def _fail(self, error: OpenRouterError) -> None:
        self._pending.append(StreamError(cause=error))
        await self._release()


class OpenRouterClient:
    """Client responsible for chat completions from OpenRouter."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._http = http_client

    @property
    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._settings.openrouter_api_key.get_secret_value()}",
            "Content-Type": "application/json",
        }
        if self._settings.openrouter_app_url:
            headers["HTTP-Referer"] = str(self._settings.openrouter_app_url)
        if self._settings.openrouter_app_name:
            headers["X-Title"] = self._settings.openrouter_app_name
        return headers

    @property
    def _base_url(self) -> str:
        """Return the OpenRouter API base URL without a trailing slash."""

        return str(self._settings.openrouter_base_url).rstrip("/")

    def _payload(
        self, messages: Sequence[PromptMessage], model: str | None, *, stream: bool
    ) -> dict[str, Any]:
        return {
            "model": model or self._settings.default_model,
            "messages": list(messages),
            "stream": stream,
        }

    def open_stream(
        self, messages: Sequence[PromptMessage], model: str | None = None
    ) -> CompletionStream:
        """Return a lazy stream of completion events for ``messages``."""

        headers = dict(self._headers)
        headers["Accept"] = "text/event-stream"
        request = self._http.build_request(
            "POST",
            f"{self._base_url}/chat/completions",
            headers=headers,
            json=self._payload(messages, model, stream=True),
        )
        return CompletionStream(self._http, request)

    async def complete(
        self, messages: Sequence[PromptMessage], model: str | None = None
    ) -> CompletionResult:
        """Request a single non-streaming completion."""

        headers = dict(self._headers)
        headers["Accept"] = "application/json"
        try:
            response = await self._http.post(
                f"{self._base_url}/chat/completions",
                headers=headers,
                json=self._payload(messages, model, stream=False),
            )
        except httpx.HTTPError as exc:
            raise OpenRouterError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        if response.status_code >= 400:
            detail = extract_error_detail(response.content)
            raise OpenRouterError(response.status_code, detail)

        try:
            body = response.json()
        except ValueError as exc:
            raise OpenRouterError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        return CompletionResult(text=_extract_message_text(body), sources=[])


def _extract_message_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        return ""
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return ""
    message = choices[0].get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(
            item["text"]
            for item in content
            if isinstance(item, dict)
            and item.get("type") == "text"
            and isinstance(item.get("text"), str)
        )
    return ""


def extract_error_detail(raw: bytes) -> Any:
    if not raw:
        return "OpenRouter returned an empty error response."
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError:
        text = raw.decode("utf-8", errors="ignore")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
        return error or payload
    return payload


__all__ = [
    "CompletionResult",
    "CompletionStream",
    "DONE_SENTINEL",
    "OpenRouterClient",
    "OpenRouterError",
    "extract_error_detail",
]
