import asyncio

import pytest

from tiered_gateway.contracts import ModelRequest, StreamChunk
from tiered_gateway.dispatcher import (
    Dispatcher,
    FallbackChainStrategy,
    SingleModelStrategy,
    build_dispatcher,
    normalize_completion,
)
from tiered_gateway.config import GatewayConfig
from tiered_gateway.errors import (
    ConfigurationError,
    ModelsExhaustedError,
    RateLimitError,
    UpstreamProtocolError,
    UpstreamStatusError,
)
from tiered_gateway.tiering import FREE_MODEL_FALLBACKS, Capability, TierPolicy
from tiered_gateway.transports import DirectHttpTransport, SdkTransport


def _ok(content="ok", model=None, usage=None):
    body = {"choices": [{"message": {"role": "assistant", "content": content}}]}
    if model:
        body["model"] = model
    if usage:
        body["usage"] = usage
    return body


class FakeTransport:
    """Scripted transport: outcomes maps model id -> list of results/exceptions, consumed in order."""

    def __init__(self, name, outcomes=None, default=None, deltas=None):
        self.name = name
        self.outcomes = {k: list(v) for k, v in (outcomes or {}).items()}
        self.default = default
        self.deltas = deltas or []
        self.calls = []
        self.closed = False

    async def complete(self, *, model, messages, max_tokens=None):
        self.calls.append(model)
        queue = self.outcomes.get(model)
        outcome = queue.pop(0) if queue else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            raise UpstreamStatusError(500, f"no script for {model}")
        return outcome

    async def stream(self, *, model, messages, max_tokens=None):
        self.calls.append(model)
        for piece in self.deltas:
            if isinstance(piece, BaseException):
                raise piece
            yield piece

    async def aclose(self):
        self.closed = True


def _request(tier, capability=Capability.CHAT, stream=False):
    return ModelRequest(messages=[{"role": "user", "content": "hi"}], tier=tier, capability=capability, stream=stream)


def _dispatcher(primary, secondary):
    return Dispatcher([SingleModelStrategy(primary), FallbackChainStrategy(secondary)])


@pytest.mark.asyncio
async def test_primary_success_skips_secondary():
    primary = FakeTransport("sdk", default=_ok("from primary", model="openai/gpt-4o-mini"))
    secondary = FakeTransport("http", default=_ok("from secondary"))
    result = await _dispatcher(primary, secondary).execute(_request("premium"))
    assert result.content == "from primary"
    assert primary.calls == ["openai/gpt-4o-mini"]
    assert secondary.calls == []


@pytest.mark.asyncio
async def test_primary_failure_of_any_kind_falls_through_to_secondary():
    primary = FakeTransport("sdk", default=AttributeError("sdk defect"))
    secondary = FakeTransport("http", default=_ok("direct"))
    result = await _dispatcher(primary, secondary).execute(_request("enterprise"))
    assert result.content == "direct"
    assert result.model == "anthropic/claude-3.7-sonnet"
    assert secondary.calls == ["anthropic/claude-3.7-sonnet"]


@pytest.mark.parametrize("tier", ["premium", "ultra-premium", "enterprise"])
@pytest.mark.asyncio
async def test_paid_tiers_never_try_more_than_one_model(tier):
    primary = FakeTransport("sdk", default=RateLimitError())
    secondary = FakeTransport("http", default=RateLimitError())
    with pytest.raises(ModelsExhaustedError) as exc:
        await _dispatcher(primary, secondary).execute(_request(tier))
    expected = TierPolicy().model_for(tier)
    assert secondary.calls == [expected]
    assert exc.value.attempted_models == [expected]


@pytest.mark.asyncio
async def test_free_tier_advances_in_order_after_rate_limit_and_short_circuits():
    primary = FakeTransport("sdk", default=RateLimitError())
    secondary = FakeTransport(
        "http",
        outcomes={
            FREE_MODEL_FALLBACKS[0]: [RateLimitError()],
            FREE_MODEL_FALLBACKS[1]: [_ok("second wins")],
        },
        default=_ok("should not be reached"),
    )
    result = await _dispatcher(primary, secondary).execute(_request("free"))
    assert result.content == "second wins"
    assert result.model == FREE_MODEL_FALLBACKS[1]
    assert secondary.calls == [FREE_MODEL_FALLBACKS[0], FREE_MODEL_FALLBACKS[1]]


@pytest.mark.asyncio
async def test_free_tier_advances_past_non_rate_limit_failures_too():
    primary = FakeTransport("sdk", default=UpstreamStatusError(503, "busy"))
    secondary = FakeTransport(
        "http",
        outcomes={
            FREE_MODEL_FALLBACKS[0]: [UpstreamStatusError(400, "bad model")],
            FREE_MODEL_FALLBACKS[1]: [{"choices": []}],
            FREE_MODEL_FALLBACKS[2]: [_ok("third")],
        },
    )
    result = await _dispatcher(primary, secondary).execute(_request("free"))
    assert result.content == "third"
    assert secondary.calls == list(FREE_MODEL_FALLBACKS[:3])


@pytest.mark.asyncio
async def test_free_tier_exhaustion_reports_every_candidate_once():
    primary = FakeTransport("sdk", default=RateLimitError())
    secondary = FakeTransport("http", default=RateLimitError(message="still limited"))
    with pytest.raises(ModelsExhaustedError) as exc:
        await _dispatcher(primary, secondary).execute(_request("free"))
    assert secondary.calls == list(FREE_MODEL_FALLBACKS)
    assert exc.value.attempted_models == list(FREE_MODEL_FALLBACKS)
    assert "still limited" in str(exc.value)
    assert isinstance(exc.value.last_error, RateLimitError)


@pytest.mark.asyncio
async def test_unknown_tier_uses_free_chain():
    primary = FakeTransport("sdk", default=_ok())
    secondary = FakeTransport("http")
    await _dispatcher(primary, secondary).execute(_request("platinum"))
    assert primary.calls == [FREE_MODEL_FALLBACKS[0]]


@pytest.mark.asyncio
async def test_configuration_error_is_not_retried():
    primary = FakeTransport("sdk", default=ConfigurationError("OPENROUTER_API_KEY is required."))
    secondary = FakeTransport("http", default=_ok())
    with pytest.raises(ConfigurationError):
        await _dispatcher(primary, secondary).execute(_request("free"))
    assert secondary.calls == []


@pytest.mark.asyncio
async def test_cancellation_stops_the_candidate_loop():
    primary = FakeTransport("sdk", default=RateLimitError())
    secondary = FakeTransport("http", outcomes={FREE_MODEL_FALLBACKS[0]: [asyncio.CancelledError()]}, default=_ok())
    with pytest.raises(asyncio.CancelledError):
        await _dispatcher(primary, secondary).execute(_request("free"))
    assert secondary.calls == [FREE_MODEL_FALLBACKS[0]]


@pytest.mark.asyncio
async def test_vision_uses_vision_model_single_candidate():
    primary = FakeTransport("sdk", default=RateLimitError())
    secondary = FakeTransport("http", default=_ok("a cat"))
    result = await _dispatcher(primary, secondary).execute(_request("free", Capability.VISION))
    assert primary.calls == ["google/gemini-2.0-flash-exp:free"]
    assert secondary.calls == ["google/gemini-2.0-flash-exp:free"]
    assert result.content == "a cat"


def test_normalize_defaults_missing_fields():
    result = normalize_completion({"choices": [{"message": {}}]}, "requested/model")
    assert result.content == ""
    assert result.model == "requested/model"
    assert (result.tokens_used, result.prompt_tokens, result.completion_tokens) == (0, 0, 0)


def test_normalize_prefers_provider_model_and_usage():
    data = _ok("hi", model="provider/actual", usage={"total_tokens": 9, "prompt_tokens": 4, "completion_tokens": 5})
    result = normalize_completion(data, "requested/model")
    assert result.model == "provider/actual"
    assert (result.tokens_used, result.prompt_tokens, result.completion_tokens) == (9, 4, 5)


def test_normalize_treats_null_content_and_usage_as_defaults():
    data = {"choices": [{"message": {"content": None}}], "usage": {"total_tokens": None}, "model": None}
    result = normalize_completion(data, "m")
    assert result.content == ""
    assert result.tokens_used == 0
    assert result.model == "m"


def test_normalize_rejects_body_without_choices():
    with pytest.raises(UpstreamProtocolError):
        normalize_completion({"error": {"message": "nope"}}, "m")


@pytest.mark.asyncio
async def test_stream_relays_deltas_from_tier_model_only():
    primary = FakeTransport("sdk", deltas=["he", "llo"])
    secondary = FakeTransport("http")
    d = _dispatcher(primary, secondary)
    chunks = [c async for c in d.stream(_request("free", stream=True))]
    assert chunks == [
        StreamChunk(content="he", model=FREE_MODEL_FALLBACKS[0]),
        StreamChunk(content="llo", model=FREE_MODEL_FALLBACKS[0]),
    ]
    assert primary.calls == [FREE_MODEL_FALLBACKS[0]]
    assert secondary.calls == []


@pytest.mark.asyncio
async def test_stream_failure_is_not_retried_on_another_model():
    primary = FakeTransport("sdk", deltas=[RateLimitError()])
    d = _dispatcher(primary, FakeTransport("http"))
    with pytest.raises(RateLimitError):
        async for _ in d.stream(_request("free", stream=True)):
            pass
    assert primary.calls == [FREE_MODEL_FALLBACKS[0]]


@pytest.mark.asyncio
async def test_aclose_closes_each_transport_once():
    primary = FakeTransport("sdk")
    secondary = FakeTransport("http")
    await _dispatcher(primary, secondary).aclose()
    assert primary.closed and secondary.closed


def test_build_dispatcher_wires_sdk_then_direct_http():
    d = build_dispatcher(GatewayConfig(openrouter_api_key="k", enable_metrics=False))
    assert [type(s) for s in d.strategies] == [SingleModelStrategy, FallbackChainStrategy]
    assert isinstance(d.strategies[0].transport, SdkTransport)
    assert isinstance(d.strategies[1].transport, DirectHttpTransport)
    assert d.stream_transport is d.strategies[0].transport


def test_dispatcher_requires_a_strategy():
    with pytest.raises(ValueError):
        Dispatcher([])


@pytest.mark.asyncio
async def test_streaming_flag_selects_the_dispatch_mode():
    primary = FakeTransport("sdk", default=_ok(), deltas=["x"])
    d = _dispatcher(primary, FakeTransport("http"))
    with pytest.raises(ValueError):
        await d.execute(_request("free", stream=True))
    with pytest.raises(ValueError):
        async for _ in d.stream(_request("free")):
            pass
    assert primary.calls == []


@pytest.mark.asyncio
async def test_single_strategy_error_reaches_the_caller_unchanged():
    only = FakeTransport("sdk", default=UpstreamStatusError(502, "down"))
    with pytest.raises(UpstreamStatusError) as exc:
        await Dispatcher([SingleModelStrategy(only)]).execute(_request("premium"))
    assert exc.value.status_code == 502
    assert only.calls == ["openai/gpt-4o-mini"]
