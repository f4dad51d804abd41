"""Per-capability message assembly.

Every builder is a pure function of its inputs: it returns a fresh message
list and never touches module state, so identical inputs give equal output.
"""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

from .contracts import Message, image_part, text_part
from .tiering import Capability

CODE_SYSTEM_PROMPT = (
    "You are an expert programmer. Generate clean, efficient, and well-documented code based on the "
    "user request. Include comments and follow best practices."
)
ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert text analyst. Analyze the provided text and provide insights, summaries, or "
    "answer questions about it. Be concise and accurate."
)
GENERATION_SYSTEM_PROMPT = (
    "You are a creative content writer. Generate high-quality, engaging content based on user "
    "requirements. Be creative, original, and maintain the requested tone and style."
)

ANALYSIS_TASK_TEMPLATES: Mapping[str, str] = MappingProxyType(
    {
        "summarize": "Summarize the following text concisely:\n\n{text}",
        "analyze": "Analyze the following text and provide key insights:\n\n{text}",
        "sentiment": "Analyze the sentiment of the following text:\n\n{text}",
        "keywords": "Extract key keywords and topics from the following text:\n\n{text}",
    }
)
GENERIC_ANALYSIS_TEMPLATE = "Analyze this text:\n\n{text}"

DEFAULT_MAX_TOKENS: Mapping[Capability, int | None] = MappingProxyType(
    {
        Capability.CHAT: None,
        Capability.CODE: 4000,
        Capability.ANALYZE: 2000,
        Capability.GENERATE: 3000,
        Capability.VISION: 2000,
    }
)

# base64 prefixes of common image magic numbers
_BASE64_IMAGE_SIGNATURES = (
    ("iVBORw0KGgo", "image/png"),
    ("/9j/", "image/jpeg"),
    ("R0lGOD", "image/gif"),
    ("UklGR", "image/webp"),
)


def max_tokens_for(capability: Capability, requested: int | None = None) -> int | None:
    if requested is not None:
        return requested
    return DEFAULT_MAX_TOKENS[capability]


def _with_system(system_prompt: str, user_content: str) -> list[Message]:
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_content},
    ]


def build_chat_messages(messages: list[Message]) -> list[Message]:
    return [dict(m) for m in messages]


def build_code_messages(prompt: str, language: str | None = None) -> list[Message]:
    if language:
        user = f"Generate {language} code: {prompt}"
    else:
        user = f"Generate code: {prompt}"
    return _with_system(CODE_SYSTEM_PROMPT, user)


def build_analysis_messages(text: str, task: str | None = None) -> list[Message]:
    template = ANALYSIS_TASK_TEMPLATES.get(task or "", GENERIC_ANALYSIS_TEMPLATE)
    return _with_system(ANALYSIS_SYSTEM_PROMPT, template.format(text=text))


def build_generation_messages(prompt: str, content_type: str | None = None, tone: str | None = None) -> list[Message]:
    user = f"Generate {content_type}: {prompt}" if content_type else prompt
    if tone:
        user += f"\n\nTone: {tone}"
    return _with_system(GENERATION_SYSTEM_PROMPT, user)


def image_data_url(image_base64: str) -> str:
    """Wrap bare base64 image data into a data URL; pass existing data URLs through."""
    data = image_base64.strip()
    if data.startswith("data:"):
        return data
    mime = "image/jpeg"
    for signature, candidate in _BASE64_IMAGE_SIGNATURES:
        if data.startswith(signature):
            mime = candidate
            break
    return f"data:{mime};base64,{data}"


def build_vision_messages(prompt: str, image_url: str | None = None, image_base64: str | None = None) -> list[Message]:
    if image_url:
        reference = image_url
    elif image_base64:
        reference = image_data_url(image_base64)
    else:
        raise ValueError("imageUrl or imageBase64 is required")
    return [{"role": "user", "content": [text_part(prompt), image_part(reference)]}]
