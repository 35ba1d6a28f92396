"""Profile settings routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..auth import Identity, require_identity
from ..repository import ChatRepository, ProfileRecord
from ..schemas.chat import ProfileOut, ProfileUpdate
from .chat import get_repository

router = APIRouter(prefix="/api/profile", tags=["profile"])


@router.get("", response_model=ProfileOut)
async def read_profile(
    identity: Identity = Depends(require_identity),
    repository: ChatRepository = Depends(get_repository),
) -> ProfileRecord:
    profile = await repository.get_profile(identity.id)
    if profile is None:
        return {"id": identity.id, "username": None}
    return profile


@router.put("", response_model=ProfileOut)
async def update_profile(
    payload: ProfileUpdate,
    identity: Identity = Depends(require_identity),
    repository: ChatRepository = Depends(get_repository),
) -> ProfileRecord:
    """Store the caller's display name."""

    return await repository.upsert_profile(identity.id, payload.normalized_username())


__all__ = ["router"]
