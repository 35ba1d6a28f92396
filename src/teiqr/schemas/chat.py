"""Pydantic models for chat requests and responses."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..chat.attachments import Attachment
from ..chat.events import Source


class ChatTurnRequest(BaseModel):
    """Incoming chat turn payload."""

    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    message: Optional[str] = None
    model: Optional[str] = None
    files: List[Attachment] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AttachmentInfo(BaseModel):
    name: str
    type: str
    size: int


class MessageOut(BaseModel):
    id: str
    conversation_id: str
    role: Literal["user", "assistant", "system"]
    content: str
    sources: List[Source] = Field(default_factory=list)
    model: Optional[str] = None
    files: List[AttachmentInfo] = Field(default_factory=list)
    created_at: str


class ConversationOut(BaseModel):
    id: str
    user_id: str
    title: str
    created_at: str
    updated_at: str


class RenameConversationRequest(BaseModel):
    title: str


class ProfileOut(BaseModel):
    id: str
    username: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ProfileUpdate(BaseModel):
    username: Optional[str] = None

    def normalized_username(self) -> Optional[str]:
        if self.username is None:
            return None
        value = self.username.strip()
        return value or None


__all__ = [
    "AttachmentInfo",
    "ChatTurnRequest",
    "ConversationOut",
    "MessageOut",
    "ProfileOut",
    "ProfileUpdate",
    "RenameConversationRequest",
]
