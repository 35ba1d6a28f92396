"""Application factory for the FastAPI service."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .auth import SupabaseIdentityResolver
from .config import PROJECT_ROOT, get_settings
from .openrouter import OpenRouterClient
from .repository import ChatRepository
from .routers.chat import router as chat_router
from .routers.conversations import router as conversations_router
from .routers.profile import router as profile_router

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _configure_logging() -> None:
    """Configure logging based on LOG_LEVEL environment variable."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    handlers: list[logging.Handler] = []
    formatter = logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    log_file = os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("teiqr").setLevel(log_level)
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        logging.getLogger(name).setLevel(log_level)

    # httpx logs every request line at INFO
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def create_app() -> FastAPI:
    _configure_logging()

    settings = get_settings()

    database_path = settings.chat_database_path
    if not database_path.is_absolute():
        database_path = (PROJECT_ROOT / database_path).resolve()
    repository = ChatRepository(database_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await repository.initialize()
        http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.request_timeout, connect=10.0),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        )
        app.state.openrouter_client = OpenRouterClient(settings, http_client)
        app.state.identity_resolver = SupabaseIdentityResolver(settings, http_client)
        try:
            yield
        finally:
            await http_client.aclose()
            await repository.close()

    app = FastAPI(
        title="TeiqR Chat Backend",
        version="0.1.0",
        description="Streaming chat backend powered by OpenRouter.",
        lifespan=lifespan,
    )

    app.state.repository = repository

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_router)
    app.include_router(conversations_router)
    app.include_router(profile_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok", "default_model": settings.default_model}

    return app


__all__ = ["create_app"]
