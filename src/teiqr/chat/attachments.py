"""User attachment variants and their normalization into prompt content."""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Annotated, Any, Literal, Sequence, Union

import kreuzberg
from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"
DEFAULT_IMAGE_MIME_TYPE = "image/png"
PDF_EXTRACTION_FAILED = "[PDF content could not be extracted]"

UserContent = Union[str, list[dict[str, Any]]]


def _strip_data_url(data: str) -> str:
    """Return the base64 payload of a ``data:`` URL, or ``data`` unchanged."""

    if data.startswith("data:") and "," in data:
        return data.split(",", 1)[1]
    return data


def _decode_base64(data: str) -> bytes:
    return base64.b64decode(_strip_data_url(data).strip(), validate=False)


def _fenced_block(filename: str, text: str) -> str:
    return f"File: {filename}\n```\n{text}\n```"


class _AttachmentBase(BaseModel):
    data: str
    filename: str | None = None
    mime_type: str | None = Field(default=None, alias="mimeType")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def display_name(self) -> str:
        return self.filename or "attachment"

    @property
    def size_bytes(self) -> int:
        try:
            return len(_decode_base64(self.data))
        except (binascii.Error, ValueError):
            return len(self.data.encode("utf-8"))

    def metadata(self) -> dict[str, Any]:
        """Describe the attachment for storage alongside the user message."""

        return {
            "name": self.display_name,
            "type": self.mime_type or self.type,  # type: ignore[attr-defined]
            "size": self.size_bytes,
        }


class ImageAttachment(_AttachmentBase):
    type: Literal["image"] = "image"

    def to_content_part(self) -> dict[str, Any]:
        url = self.data
        if not url.startswith(("data:", "http://", "https://")):
            mime_type = self.mime_type or DEFAULT_IMAGE_MIME_TYPE
            url = f"data:{mime_type};base64,{url}"
        return {"type": "image_url", "image_url": {"url": url}}


class TextAttachment(_AttachmentBase):
    type: Literal["text"] = "text"

    @property
    def size_bytes(self) -> int:
        return len(self.data.encode("utf-8"))

    async def to_prompt_text(self) -> str:
        return _fenced_block(self.display_name, self.data)


class PdfAttachment(_AttachmentBase):
    type: Literal["pdf"] = "pdf"

    async def to_prompt_text(self) -> str:
        try:
            text = await extract_pdf_text(_decode_base64(self.data))
        except Exception as exc:
            logger.warning("PDF parsing error for %s: %s", self.display_name, exc)
            return f"File: {self.display_name}\n{PDF_EXTRACTION_FAILED}"
        return _fenced_block(self.display_name, text)


Attachment = Annotated[
    Union[ImageAttachment, TextAttachment, PdfAttachment],
    Field(discriminator="type"),
]


async def extract_pdf_text(content: bytes) -> str:
    """Extract the text layer of a PDF document."""

    result = await kreuzberg.extract_bytes(content, PDF_MIME_TYPE)
    return result.content


async def normalize_user_content(
    message: str, attachments: Sequence[Attachment] | None
) -> UserContent:
    """Fold attachments into the content sent upstream for the current turn.

    Images switch the turn to a multimodal content array; in that case any
    text or PDF attachments of the same request are not sent. Without images,
    text and PDF attachments are rendered as labelled blocks ahead of the
    message.
    """

    if not attachments:
        return message

    images = [item for item in attachments if isinstance(item, ImageAttachment)]
    if images:
        return [{"type": "text", "text": message}] + [
            image.to_content_part() for image in images
        ]

    blocks = [
        await item.to_prompt_text()
        for item in attachments
        if isinstance(item, (TextAttachment, PdfAttachment))
    ]
    blocks = [block for block in blocks if block]
    if not blocks:
        return message
    return "\n\n".join(blocks) + "\n\n" + message


__all__ = [
    "Attachment",
    "ImageAttachment",
    "PdfAttachment",
    "TextAttachment",
    "UserContent",
    "extract_pdf_text",
    "normalize_user_content",
]
