import json
import pathlib
import sys
from typing import Any, Callable

import httpx
import pytest
from fastapi import FastAPI
from pydantic import SecretStr

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from teiqr.auth import Identity  # noqa: E402
from teiqr.config import Settings, get_settings  # noqa: E402
from teiqr.openrouter import OpenRouterClient  # noqa: E402
from teiqr.repository import ChatRepository  # noqa: E402
from teiqr.routers.chat import router as chat_router  # noqa: E402
from teiqr.routers.conversations import router as conversations_router  # noqa: E402
from teiqr.routers.profile import router as profile_router  # noqa: E402

UPSTREAM_URL = "https://openrouter.test/api/v1/chat/completions"


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    """sse-starlette keeps a module level exit event bound to the first loop."""

    from sse_starlette.sse import AppStatus

    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
    yield
    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "openrouter_api_key": SecretStr("test-key"),
        "openrouter_base_url": "https://openrouter.test/api/v1",
        "openrouter_app_url": "https://app.example.com",
        "openrouter_app_name": "TeiqR",
        "default_model": "anthropic/claude-sonnet-4.5",
        "system_prompt": "You are a test assistant.",
    }
    values.update(overrides)
    return Settings(**values)


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered as the given byte chunks."""

    def __init__(self, chunks: list[bytes]) -> None:
        self._chunks = chunks

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk


def sse_body(*payloads: Any, done: bool = True) -> bytes:
    """Encode upstream ``data:`` lines the way OpenRouter frames them."""

    lines = []
    for payload in payloads:
        data = payload if isinstance(payload, str) else json.dumps(payload)
        lines.append(f"data: {data}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


def delta_chunk(text: str) -> dict[str, Any]:
    return {"choices": [{"index": 0, "delta": {"role": "assistant", "content": text}}]}


def parse_sse_frames(body: str) -> list[dict[str, Any]]:
    frames = []
    for block in body.split("\n\n"):
        for line in block.splitlines():
            if line.startswith("data: "):
                frames.append(json.loads(line[len("data: ") :]))
    return frames


class StaticIdentityResolver:
    def __init__(self, identity: Identity | None) -> None:
        self.identity = identity

    async def resolve(self, request) -> Identity | None:
        return self.identity


class RecordingUpstream:
    """MockTransport handler that records requests sent upstream."""

    def __init__(self, respond: Callable[[httpx.Request], Any]) -> None:
        self._respond = respond
        self.requests: list[dict[str, Any]] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(json.loads(request.content))
        result = self._respond(request)
        if hasattr(result, "__await__"):
            result = await result
        return result


def build_app(
    repository: ChatRepository,
    upstream: Callable[[httpx.Request], Any],
    *,
    identity: Identity | None = Identity(id="user-1", email="user@example.com"),
    settings: Settings | None = None,
) -> FastAPI:
    settings = settings or make_settings()
    app = FastAPI()
    app.state.repository = repository
    app.state.openrouter_client = OpenRouterClient(
        settings, httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    )
    app.state.identity_resolver = StaticIdentityResolver(identity)
    app.dependency_overrides[get_settings] = lambda: settings
    app.include_router(chat_router)
    app.include_router(conversations_router)
    app.include_router(profile_router)
    return app


def asgi_client(app: FastAPI, *, raise_app_exceptions: bool = True) -> httpx.AsyncClient:
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=raise_app_exceptions)
    return httpx.AsyncClient(transport=transport, base_url="http://testserver")


@pytest.fixture
async def repository(tmp_path):
    repo = ChatRepository(tmp_path / "chat.db")
    await repo.initialize()
    try:
        yield repo
    finally:
        await repo.close()
