from __future__ import annotations

from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any, Protocol

import structlog

from .config import GatewayConfig
from .contracts import ModelRequest, ModelResult, StreamChunk
from .errors import ConfigurationError, ModelsExhaustedError, RateLimitError, UpstreamProtocolError
from .metrics import dispatch_attempts_total, dispatch_exhausted_total, dispatch_fallbacks_total
from .tiering import DEFAULT_POLICY, Tier, TierPolicy
from .transports import DirectHttpTransport, SdkTransport, Transport

log = structlog.get_logger()


def _count(usage: Mapping[str, Any], key: str) -> int:
    value = usage.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def _message_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(p.get("text", "") for p in content if isinstance(p, dict) and isinstance(p.get("text"), str))
    return ""


def normalize_completion(data: Mapping[str, Any], requested_model: str) -> ModelResult:
    """Turn a chat-completions body into a ModelResult with every field populated.

    Raises ``UpstreamProtocolError`` when the body carries no completion choice.
    """
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        raise UpstreamProtocolError("Invalid response from gateway: no completion choices.")

    choice = choices[0] if isinstance(choices[0], dict) else {}
    message = choice.get("message")
    content = _message_text(message.get("content")) if isinstance(message, dict) else ""

    usage = data.get("usage")
    if not isinstance(usage, dict):
        usage = {}
    model = data.get("model")

    return ModelResult(
        content=content,
        model=model if isinstance(model, str) and model else requested_model,
        tokens_used=_count(usage, "total_tokens"),
        prompt_tokens=_count(usage, "prompt_tokens"),
        completion_tokens=_count(usage, "completion_tokens"),
    )


async def _attempt(transport: Transport, model: str, request: ModelRequest) -> ModelResult:
    try:
        data = await transport.complete(model=model, messages=request.messages, max_tokens=request.max_tokens)
        result = normalize_completion(data, model)
    except RateLimitError:
        dispatch_attempts_total.labels(strategy=transport.name, outcome="rate_limited").inc()
        raise
    except Exception:
        dispatch_attempts_total.labels(strategy=transport.name, outcome="error").inc()
        raise
    dispatch_attempts_total.labels(strategy=transport.name, outcome="success").inc()
    return result


class DispatchStrategy(Protocol):
    name: str
    transport: Transport

    async def run(self, request: ModelRequest, policy: TierPolicy) -> ModelResult:
        ...


class SingleModelStrategy:
    """Calls the tier's resolved model once."""

    def __init__(self, transport: Transport):
        self.transport = transport
        self.name = transport.name

    async def run(self, request: ModelRequest, policy: TierPolicy) -> ModelResult:
        model = policy.model_for(request.tier, request.capability)
        log.debug("dispatch_attempt", strategy=self.name, model=model, tier=request.tier)
        return await _attempt(self.transport, model, request)


class FallbackChainStrategy:
    """Walks the tier's candidate models in order; the first well-formed response wins."""

    def __init__(self, transport: Transport):
        self.transport = transport
        self.name = transport.name

    async def run(self, request: ModelRequest, policy: TierPolicy) -> ModelResult:
        candidates = policy.candidates_for(request.tier, request.capability)
        attempted: list[str] = []
        last_error: Exception | None = None

        for index, model in enumerate(candidates):
            is_last = index == len(candidates) - 1
            attempted.append(model)
            log.info(
                "dispatch_attempt",
                strategy=self.name,
                model=model,
                attempt=index + 1,
                candidates=len(candidates),
            )
            try:
                result = await _attempt(self.transport, model, request)
            except ConfigurationError:
                raise
            except RateLimitError as e:
                last_error = e
                if not is_last:
                    log.warning("dispatch_rate_limited", strategy=self.name, model=model)
                    dispatch_fallbacks_total.labels(kind="model", reason="rate_limited").inc()
                    continue
                log.error("dispatch_candidate_failed", strategy=self.name, model=model, error=str(e))
            except Exception as e:
                last_error = e
                log.error("dispatch_candidate_failed", strategy=self.name, model=model, error=str(e))
                if not is_last:
                    dispatch_fallbacks_total.labels(kind="model", reason="error").inc()
            else:
                log.info("dispatch_ok", strategy=self.name, model=model, attempt=index + 1)
                return result

        dispatch_exhausted_total.labels(tier=Tier.parse(request.tier).value).inc()
        log.error("dispatch_exhausted", strategy=self.name, attempted=attempted)
        raise ModelsExhaustedError(attempted, last_error) from last_error


class Dispatcher:
    """Runs a ModelRequest through an ordered chain of strategies.

    The first strategy to return a result ends the chain. A configuration
    error stops it immediately; any other failure hands the request to the
    next strategy, and the last strategy's error is what callers see.
    """

    def __init__(
        self,
        strategies: Sequence[DispatchStrategy],
        *,
        policy: TierPolicy = DEFAULT_POLICY,
        stream_transport: Transport | None = None,
    ):
        if not strategies:
            raise ValueError("Dispatcher needs at least one strategy.")
        self.strategies = tuple(strategies)
        self.policy = policy
        self.stream_transport = stream_transport or self.strategies[0].transport

    async def execute(self, request: ModelRequest) -> ModelResult:
        if request.stream:
            raise ValueError("Streaming requests go through Dispatcher.stream().")
        *fallible, last = self.strategies
        for index, strategy in enumerate(fallible):
            try:
                return await strategy.run(request, self.policy)
            except ConfigurationError:
                raise
            except Exception as e:
                log.warning(
                    "dispatch_strategy_failed",
                    strategy=strategy.name,
                    next_strategy=self.strategies[index + 1].name,
                    error=str(e),
                )
                dispatch_fallbacks_total.labels(kind="transport", reason="error").inc()
        return await last.run(request, self.policy)

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        if not request.stream:
            raise ValueError("Non-streaming requests go through Dispatcher.execute().")
        # No fallback mid-stream: a partially delivered answer cannot switch models.
        model = self.policy.model_for(request.tier, request.capability)
        log.info("dispatch_stream_open", strategy=self.stream_transport.name, model=model, tier=request.tier)
        pieces = self.stream_transport.stream(model=model, messages=request.messages, max_tokens=request.max_tokens)
        try:
            async for piece in pieces:
                yield StreamChunk(content=piece, model=model)
        finally:
            aclose = getattr(pieces, "aclose", None)
            if callable(aclose):
                await aclose()

    async def aclose(self) -> None:
        seen: set[int] = set()
        for transport in [s.transport for s in self.strategies] + [self.stream_transport]:
            if id(transport) in seen:
                continue
            seen.add(id(transport))
            await transport.aclose()


def build_dispatcher(cfg: GatewayConfig, *, policy: TierPolicy = DEFAULT_POLICY) -> Dispatcher:
    common = dict(
        base_url=cfg.openrouter_base_url,
        timeout_seconds=cfg.upstream_timeout_seconds,
        headers=cfg.gateway_headers(),
    )
    sdk = SdkTransport(cfg.openrouter_api_key, **common)
    http = DirectHttpTransport(cfg.openrouter_api_key, **common)
    return Dispatcher(
        [SingleModelStrategy(sdk), FallbackChainStrategy(http)],
        policy=policy,
        stream_transport=sdk,
    )
