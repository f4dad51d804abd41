from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .contracts import Message, ModelResult


def _require_text(field: str, v: str) -> str:
    if not v.strip():
        raise ValueError(f"{field} is required")
    return v


class TextPart(BaseModel):
    type: Literal["text"]
    text: str


class ImageUrl(BaseModel):
    url: str
    detail: str | None = None


class ImagePart(BaseModel):
    type: Literal["image_url"]
    image_url: ImageUrl


ContentPart = Annotated[TextPart | ImagePart, Field(discriminator="type")]


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str | list[ContentPart]


class CapabilityRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    max_tokens: int | None = None

    @field_validator("max_tokens")
    @classmethod
    def _validate_max_tokens(cls, v: int | None) -> int | None:
        if v is None:
            return None
        if v <= 0:
            raise ValueError("maxTokens must be > 0.")
        return v


def _scalar_tier(v: Any) -> Any:
    # Numbers and booleans become strings so Tier.parse can degrade them to free.
    if isinstance(v, (bool, int, float)):
        return str(v)
    return v


class TieredRequest(CapabilityRequest):
    tier: str

    @field_validator("tier", mode="before")
    @classmethod
    def _coerce_tier(cls, v: Any) -> Any:
        return _scalar_tier(v)

    @field_validator("tier")
    @classmethod
    def _validate_tier(cls, v: str) -> str:
        return _require_text("tier", v)


class ChatRequest(CapabilityRequest):
    messages: list[ChatMessage] = Field(min_length=1)
    tier: str = "free"
    stream: bool = False

    @field_validator("tier", mode="before")
    @classmethod
    def _coerce_tier(cls, v: Any) -> Any:
        if v is None:
            return "free"
        return _scalar_tier(v)

    def gateway_messages(self) -> list[Message]:
        return [m.model_dump(exclude_none=True) for m in self.messages]

    def total_chars(self) -> int:
        total = 0
        for m in self.messages:
            if isinstance(m.content, str):
                total += len(m.content)
            else:
                total += sum(len(p.text) for p in m.content if isinstance(p, TextPart))
        return total


class CodeRequest(TieredRequest):
    prompt: str
    language: str | None = None

    @field_validator("prompt")
    @classmethod
    def _validate_prompt(cls, v: str) -> str:
        return _require_text("prompt", v)


class AnalyzeRequest(TieredRequest):
    text: str
    task: str | None = None

    @field_validator("text")
    @classmethod
    def _validate_text(cls, v: str) -> str:
        return _require_text("text", v)


class GenerateRequest(TieredRequest):
    prompt: str
    content_type: str | None = None
    tone: str | None = None

    @field_validator("prompt")
    @classmethod
    def _validate_prompt(cls, v: str) -> str:
        return _require_text("prompt", v)


class VisionRequest(TieredRequest):
    prompt: str
    image_url: str | None = None
    image_base64: str | None = None

    @field_validator("prompt")
    @classmethod
    def _validate_prompt(cls, v: str) -> str:
        return _require_text("prompt", v)

    @model_validator(mode="after")
    def _require_image(self) -> "VisionRequest":
        if not (self.image_url or self.image_base64):
            raise ValueError("imageUrl or imageBase64 is required")
        return self


class CompletionPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    content: str
    model: str
    tokens_used: int
    prompt_tokens: int
    completion_tokens: int
    response_time: int
    tier: str

    @classmethod
    def from_result(cls, result: ModelResult, *, response_time: int, tier: str, **echo: Any):
        return cls(
            content=result.content,
            model=result.model,
            tokens_used=result.tokens_used,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            response_time=response_time,
            tier=tier,
            **echo,
        )


class CodePayload(CompletionPayload):
    language: str


class AnalyzePayload(CompletionPayload):
    task: str


class GeneratePayload(CompletionPayload):
    content_type: str
    tone: str


class VisionPayload(CompletionPayload):
    media_type: Literal["image"] = "image"


class ErrorPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    error: str
    message: str
    param: str | None = None
    response_time: int | None = None


def make_error_payload(
    *,
    error: str,
    message: str,
    param: str | None = None,
    response_time: int | None = None,
) -> dict[str, Any]:
    return ErrorPayload(error=error, message=message, param=param, response_time=response_time).model_dump(
        by_alias=True, exclude_none=True
    )
