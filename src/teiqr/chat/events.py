"""Semantic events produced by the upstream completion stream."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from pydantic import BaseModel, ConfigDict


class Source(BaseModel):
    """A citation attached to an assistant reply."""

    title: str
    url: str
    snippet: str | None = None
    favicon_url: str | None = None

    model_config = ConfigDict(extra="ignore")


@dataclass(frozen=True)
class Delta:
    """Incremental text fragment."""

    text: str


@dataclass(frozen=True)
class Done:
    """Terminal event; the completion finished."""

    sources: list[Source] = field(default_factory=list)


@dataclass(frozen=True)
class StreamError:
    """Terminal event; the upstream failed and the turn must be aborted."""

    cause: Exception


StreamEvent = Union[Delta, Done, StreamError]


__all__ = ["Delta", "Done", "Source", "StreamError", "StreamEvent"]
