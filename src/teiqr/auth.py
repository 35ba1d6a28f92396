"""Resolve the calling user from a request."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import httpx
from fastapi import Depends, HTTPException, Request

from .config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    id: str
    email: Optional[str] = None


class IdentityResolver(Protocol):
    async def resolve(self, request: Request) -> Identity | None:
        ...


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


class SupabaseIdentityResolver:
    """Validate bearer tokens against a Supabase-compatible auth endpoint."""

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._http = http_client

    async def resolve(self, request: Request) -> Identity | None:
        token = _bearer_token(request)
        if token is None:
            return None

        base_url = self._settings.supabase_url
        anon_key = self._settings.supabase_anon_key
        if base_url is None or anon_key is None:
            logger.warning("SUPABASE_URL or SUPABASE_ANON_KEY is not configured.")
            return None

        try:
            response = await self._http.get(
                f"{str(base_url).rstrip('/')}/auth/v1/user",
                headers={
                    "apikey": anon_key.get_secret_value(),
                    "Authorization": f"Bearer {token}",
                },
            )
        except httpx.HTTPError as exc:
            logger.warning("Auth provider request failed: %s", exc)
            return None

        if response.status_code != 200:
            return None

        try:
            payload = response.json()
        except ValueError:
            return None
        user_id = payload.get("id") if isinstance(payload, dict) else None
        if not isinstance(user_id, str) or not user_id:
            return None
        return Identity(id=user_id, email=payload.get("email"))


async def get_current_identity(request: Request) -> Identity | None:
    """FastAPI dependency returning the caller, or ``None`` if anonymous."""

    resolver: IdentityResolver = request.app.state.identity_resolver
    return await resolver.resolve(request)


async def require_identity(
    identity: Identity | None = Depends(get_current_identity),
) -> Identity:
    if identity is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return identity


__all__ = [
    "Identity",
    "IdentityResolver",
    "SupabaseIdentityResolver",
    "get_current_identity",
    "require_identity",
]
