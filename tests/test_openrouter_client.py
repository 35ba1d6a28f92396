from __future__ import annotations

import json
import logging

import httpx
import pytest

from conftest import ChunkedStream, delta_chunk, make_settings, sse_body
from teiqr.chat.events import Delta, Done, StreamError
from teiqr.openrouter import OpenRouterClient, OpenRouterError


def make_client(handler) -> OpenRouterClient:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OpenRouterClient(make_settings(), http_client)


def streaming_handler(*chunks: bytes, status_code: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status_code,
            headers={"content-type": "text/event-stream"},
            stream=ChunkedStream(list(chunks)),
        )

    return handler


async def collect(stream) -> list:
    return [event async for event in stream]


@pytest.mark.asyncio
async def test_stream_yields_deltas_then_done() -> None:
    body = sse_body(delta_chunk("Hel"), delta_chunk("lo"), delta_chunk(""))
    client = make_client(streaming_handler(body))

    events = await collect(client.open_stream([{"role": "user", "content": "hi"}]))

    assert events == [Delta("Hel"), Delta("lo"), Done(sources=[])]


@pytest.mark.asyncio
async def test_request_carries_auth_headers_and_stream_flag() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["url"] = str(request.url)
        captured["headers"] = request.headers
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, content=sse_body())

    client = make_client(handler)
    prompt = [{"role": "user", "content": "hi"}]
    await collect(client.open_stream(prompt, "openai/gpt-4o"))

    headers = captured["headers"]
    assert captured["url"] == "https://openrouter.test/api/v1/chat/completions"
    assert headers["Authorization"] == "Bearer test-key"
    assert headers["X-Title"] == "TeiqR"
    assert headers["HTTP-Referer"].rstrip("/") == "https://app.example.com"
    assert captured["body"] == {
        "model": "openai/gpt-4o",
        "messages": prompt,
        "stream": True,
    }


@pytest.mark.asyncio
async def test_partial_lines_are_buffered_across_chunks() -> None:
    body = sse_body(delta_chunk("first"), delta_chunk("sécond"))
    # Split mid-JSON and inside the multi-byte character.
    split_at = body.index("sé".encode("utf-8")) + 2
    chunks = [body[:10], body[10:split_at], body[split_at:]]
    client = make_client(streaming_handler(*chunks))

    events = await collect(client.open_stream([]))

    assert events == [Delta("first"), Delta("sécond"), Done(sources=[])]


@pytest.mark.asyncio
async def test_comments_and_other_fields_are_ignored() -> None:
    body = (
        b": OPENROUTER PROCESSING\n\n"
        b"event: message\n"
        + sse_body(delta_chunk("ok"))
    )
    client = make_client(streaming_handler(body))

    assert await collect(client.open_stream([])) == [Delta("ok"), Done(sources=[])]


@pytest.mark.asyncio
async def test_missing_sentinel_still_finishes_with_done() -> None:
    body = sse_body(delta_chunk("partial"), done=False)
    client = make_client(streaming_handler(body))

    assert await collect(client.open_stream([])) == [Delta("partial"), Done(sources=[])]


@pytest.mark.asyncio
async def test_trailing_line_without_newline_is_processed() -> None:
    body = sse_body(delta_chunk("a"), done=False) + b"data: [DONE]"
    client = make_client(streaming_handler(body))

    assert await collect(client.open_stream([])) == [Delta("a"), Done(sources=[])]


@pytest.mark.asyncio
async def test_lines_after_sentinel_are_not_emitted() -> None:
    body = sse_body(delta_chunk("a")) + sse_body(delta_chunk("late"), done=False)
    client = make_client(streaming_handler(body))

    assert await collect(client.open_stream([])) == [Delta("a"), Done(sources=[])]


@pytest.mark.asyncio
async def test_malformed_payloads_are_logged_and_skipped(caplog) -> None:
    body = sse_body("{not json", delta_chunk("fine"), "   ")
    client = make_client(streaming_handler(body))

    with caplog.at_level(logging.WARNING, logger="teiqr.openrouter"):
        events = await collect(client.open_stream([]))

    assert events == [Delta("fine"), Done(sources=[])]
    warnings = [r for r in caplog.records if "Error parsing SSE data" in r.getMessage()]
    assert len(warnings) == 1


@pytest.mark.asyncio
async def test_in_band_error_is_terminal() -> None:
    body = sse_body(
        delta_chunk("before"),
        {"error": {"code": 429, "message": "Rate limited"}},
        delta_chunk("after"),
    )
    client = make_client(streaming_handler(body))

    events = await collect(client.open_stream([]))

    assert events[0] == Delta("before")
    assert len(events) == 2
    assert isinstance(events[1], StreamError)
    assert isinstance(events[1].cause, OpenRouterError)
    assert events[1].cause.status_code == 429
    assert str(events[1].cause) == "Rate limited"


@pytest.mark.asyncio
async def test_mid_stream_error_with_choices_is_terminal() -> None:
    body = sse_body(
        delta_chunk("partial"),
        {
            "error": {"code": "server_error", "message": "Provider disconnected"},
            "choices": [
                {"index": 0, "delta": {"content": ""}, "finish_reason": "error"}
            ],
        },
        done=False,
    )
    client = make_client(streaming_handler(body))

    events = await collect(client.open_stream([]))

    assert events[0] == Delta("partial")
    assert len(events) == 2
    assert isinstance(events[1], StreamError)
    assert events[1].cause.status_code == 502
    assert str(events[1].cause) == "Provider disconnected"


@pytest.mark.asyncio
async def test_error_finish_reason_is_terminal() -> None:
    body = sse_body(
        delta_chunk("partial"),
        {"choices": [{"index": 0, "delta": {"content": ""}, "finish_reason": "error"}]},
        delta_chunk("late"),
    )
    client = make_client(streaming_handler(body))

    events = await collect(client.open_stream([]))

    assert events[0] == Delta("partial")
    assert len(events) == 2
    assert isinstance(events[1], StreamError)
    assert events[1].cause.status_code == 502


@pytest.mark.asyncio
async def test_http_error_status_becomes_stream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": {"message": "Internal Server Error"}})

    client = make_client(handler)

    events = await collect(client.open_stream([]))

    assert len(events) == 1
    assert isinstance(events[0], StreamError)
    assert events[0].cause.status_code == 500
    assert events[0].cause.detail == "Internal Server Error"


@pytest.mark.asyncio
async def test_transport_failure_becomes_stream_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)

    events = await collect(client.open_stream([]))

    assert len(events) == 1
    assert isinstance(events[0], StreamError)
    assert events[0].cause.status_code == 502


@pytest.mark.asyncio
async def test_stream_is_lazy_and_single_pass() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(200, content=sse_body(delta_chunk("x")))

    client = make_client(handler)
    stream = client.open_stream([])
    assert calls["count"] == 0

    assert await collect(stream) == [Delta("x"), Done(sources=[])]
    assert await collect(stream) == []
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_aclose_before_exhaustion_stops_iteration() -> None:
    body = sse_body(delta_chunk("a"), delta_chunk("b"))
    client = make_client(streaming_handler(body))
    stream = client.open_stream([])

    assert await stream.__anext__() == Delta("a")
    await stream.aclose()

    with pytest.raises(StopAsyncIteration):
        await stream.__anext__()


@pytest.mark.asyncio
async def test_complete_returns_message_text() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is False
        return httpx.Response(
            200, json={"choices": [{"message": {"content": "A red cat"}}]}
        )

    client = make_client(handler)

    result = await client.complete([{"role": "user", "content": "cat"}], "m")

    assert result.text == "A red cat"
    assert result.sources == []


@pytest.mark.asyncio
async def test_complete_raises_on_error_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "bad model"}})

    client = make_client(handler)

    with pytest.raises(OpenRouterError) as excinfo:
        await client.complete([], "m")

    assert excinfo.value.status_code == 400
    assert excinfo.value.detail == "bad model"
