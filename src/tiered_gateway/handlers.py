from __future__ import annotations

import time
from collections.abc import AsyncIterator

import structlog

from . import prompts
from .contracts import Message, ModelRequest, ModelResult, StreamChunk
from .dispatcher import Dispatcher
from .errors import CapabilityError, ConfigurationError
from .metrics import dispatch_latency_seconds
from .schemas import (
    AnalyzePayload,
    AnalyzeRequest,
    ChatRequest,
    CodePayload,
    CodeRequest,
    CompletionPayload,
    GeneratePayload,
    GenerateRequest,
    VisionPayload,
    VisionRequest,
)
from .tiering import Capability

log = structlog.get_logger()

FAILURE_LABELS = {
    Capability.CHAT: "Chat completion failed",
    Capability.CODE: "Code generation failed",
    Capability.ANALYZE: "Text analysis failed",
    Capability.GENERATE: "Content generation failed",
    Capability.VISION: "Vision analysis failed",
}


def _elapsed_ms(started_at: float) -> int:
    return max(0, int((time.monotonic() - started_at) * 1000))


def _capability_error(capability: Capability, exc: Exception, response_time_ms: int | None) -> CapabilityError:
    label = FAILURE_LABELS[capability]
    if isinstance(exc, ConfigurationError):
        category = "configuration_error"
    else:
        category = "dispatch_error"
    return CapabilityError(
        label,
        f"{label}: {exc}",
        category=category,
        status_code=500,
        response_time_ms=response_time_ms,
    )


class CapabilityHandlers:
    """Entry points for the five capabilities.

    Inputs arrive already validated by their request schema. Each method
    assembles the prompt, times the dispatch and returns the response
    payload; every failure leaves as a ``CapabilityError``.
    """

    def __init__(self, dispatcher: Dispatcher):
        self.dispatcher = dispatcher

    async def _dispatch(
        self,
        capability: Capability,
        messages: list[Message],
        tier: str,
        max_tokens: int | None,
    ) -> tuple[ModelResult, int]:
        request = ModelRequest(
            messages=messages,
            tier=tier,
            max_tokens=prompts.max_tokens_for(capability, max_tokens),
            capability=capability,
        )
        started_at = time.monotonic()
        try:
            with dispatch_latency_seconds.labels(capability=capability.value).time():
                result = await self.dispatcher.execute(request)
        except Exception as e:
            elapsed = _elapsed_ms(started_at)
            log.error("capability_failed", capability=capability.value, tier=tier, response_time_ms=elapsed, error=str(e))
            raise _capability_error(capability, e, elapsed) from e
        elapsed = _elapsed_ms(started_at)
        log.info("capability_ok", capability=capability.value, tier=tier, model=result.model, response_time_ms=elapsed)
        return result, elapsed

    async def chat(self, req: ChatRequest) -> CompletionPayload:
        messages = prompts.build_chat_messages(req.gateway_messages())
        result, elapsed = await self._dispatch(Capability.CHAT, messages, req.tier, req.max_tokens)
        return CompletionPayload.from_result(result, response_time=elapsed, tier=req.tier)

    async def code(self, req: CodeRequest) -> CodePayload:
        messages = prompts.build_code_messages(req.prompt, req.language)
        result, elapsed = await self._dispatch(Capability.CODE, messages, req.tier, req.max_tokens)
        return CodePayload.from_result(result, response_time=elapsed, tier=req.tier, language=req.language or "auto")

    async def analyze(self, req: AnalyzeRequest) -> AnalyzePayload:
        messages = prompts.build_analysis_messages(req.text, req.task)
        result, elapsed = await self._dispatch(Capability.ANALYZE, messages, req.tier, req.max_tokens)
        return AnalyzePayload.from_result(result, response_time=elapsed, tier=req.tier, task=req.task or "analyze")

    async def generate(self, req: GenerateRequest) -> GeneratePayload:
        messages = prompts.build_generation_messages(req.prompt, req.content_type, req.tone)
        result, elapsed = await self._dispatch(Capability.GENERATE, messages, req.tier, req.max_tokens)
        return GeneratePayload.from_result(
            result,
            response_time=elapsed,
            tier=req.tier,
            content_type=req.content_type or "general",
            tone=req.tone or "neutral",
        )

    async def vision(self, req: VisionRequest) -> VisionPayload:
        messages = prompts.build_vision_messages(req.prompt, req.image_url, req.image_base64)
        result, elapsed = await self._dispatch(Capability.VISION, messages, req.tier, req.max_tokens)
        return VisionPayload.from_result(result, response_time=elapsed, tier=req.tier)

    async def open_chat_stream(self, req: ChatRequest) -> AsyncIterator[StreamChunk]:
        """Open the chat stream and wait for its first chunk.

        Failures before anything was produced surface here as a
        ``CapabilityError`` so they can still become a normal error response.
        The returned iterator replays the first chunk, then the rest.
        """
        request = ModelRequest(
            messages=prompts.build_chat_messages(req.gateway_messages()),
            tier=req.tier,
            max_tokens=prompts.max_tokens_for(Capability.CHAT, req.max_tokens),
            stream=True,
            capability=Capability.CHAT,
        )
        started_at = time.monotonic()
        chunks = self.dispatcher.stream(request)
        try:
            first: StreamChunk | None = await anext(chunks)
        except StopAsyncIteration:
            first = None
        except Exception as e:
            await chunks.aclose()
            elapsed = _elapsed_ms(started_at)
            log.error("capability_stream_open_failed", tier=req.tier, response_time_ms=elapsed, error=str(e))
            raise _capability_error(Capability.CHAT, e, elapsed) from e

        async def _replay() -> AsyncIterator[StreamChunk]:
            try:
                if first is None:
                    return
                yield first
                async for chunk in chunks:
                    yield chunk
            finally:
                await chunks.aclose()

        return _replay()
