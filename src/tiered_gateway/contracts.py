from __future__ import annotations

from dataclasses import dataclass
from typing import Any, TypeAlias

from .tiering import Capability

# OpenAI chat-completions shaped message: {"role": ..., "content": str | list[part]}
Message: TypeAlias = dict[str, Any]


def text_part(text: str) -> dict[str, Any]:
    return {"type": "text", "text": text}


def image_part(url: str) -> dict[str, Any]:
    return {"type": "image_url", "image_url": {"url": url}}


@dataclass(frozen=True)
class ModelRequest:
    messages: list[Message]
    tier: str
    max_tokens: int | None = None
    stream: bool = False
    capability: Capability = Capability.CHAT


@dataclass(frozen=True)
class ModelResult:
    content: str
    model: str
    tokens_used: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass(frozen=True)
class StreamChunk:
    content: str
    model: str
