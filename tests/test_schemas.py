import pytest
from pydantic import ValidationError

from tiered_gateway.contracts import ModelResult
from tiered_gateway.schemas import (
    AnalyzeRequest,
    ChatRequest,
    CodePayload,
    CodeRequest,
    GenerateRequest,
    VisionRequest,
    make_error_payload,
)


def test_capability_requests_accept_camel_case_fields():
    req = GenerateRequest.model_validate(
        {"prompt": "a poem", "contentType": "haiku", "tone": "calm", "tier": "premium", "maxTokens": 100}
    )
    assert req.content_type == "haiku"
    assert req.max_tokens == 100

    vision = VisionRequest.model_validate({"prompt": "what?", "imageBase64": "iVBORw0KGgo", "tier": "free"})
    assert vision.image_base64 == "iVBORw0KGgo"
    assert vision.image_url is None


def test_capability_requests_validate_max_tokens_positive():
    with pytest.raises(ValidationError):
        CodeRequest(prompt="x", tier="premium", max_tokens=0)
    with pytest.raises(ValidationError):
        AnalyzeRequest(text="x", tier="premium", max_tokens=-5)


def test_blank_required_text_is_rejected():
    with pytest.raises(ValidationError, match="prompt is required"):
        CodeRequest(prompt="  ", tier="premium")
    with pytest.raises(ValidationError, match="text is required"):
        AnalyzeRequest(text="", tier="premium")
    with pytest.raises(ValidationError, match="tier is required"):
        GenerateRequest(prompt="x", tier=" ")


def test_vision_request_requires_an_image():
    with pytest.raises(ValidationError, match="imageUrl or imageBase64 is required"):
        VisionRequest(prompt="what is this?", tier="free")
    assert VisionRequest(prompt="p", tier="free", image_url="https://img.test/a.png").image_url


def test_unknown_tier_is_accepted_as_given():
    req = CodeRequest(prompt="x", tier="platinum")
    assert req.tier == "platinum"


def test_chat_request_defaults_and_message_dump():
    req = ChatRequest.model_validate(
        {
            "messages": [
                {"role": "system", "content": "be brief"},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": "look"},
                        {"type": "image_url", "image_url": {"url": "https://img.test/a.png"}},
                    ],
                },
            ]
        }
    )
    assert req.tier == "free"
    assert req.stream is False
    assert req.gateway_messages() == [
        {"role": "system", "content": "be brief"},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "look"},
                {"type": "image_url", "image_url": {"url": "https://img.test/a.png"}},
            ],
        },
    ]
    assert req.total_chars() == len("be brief") + len("look")


def test_chat_request_rejects_empty_or_unknown_roles():
    with pytest.raises(ValidationError):
        ChatRequest(messages=[])
    with pytest.raises(ValidationError):
        ChatRequest.model_validate({"messages": [{"role": "tool", "content": "x"}]})


def test_payload_dumps_camel_case():
    result = ModelResult(content="c", model="m", tokens_used=3, prompt_tokens=1, completion_tokens=2)
    payload = CodePayload.from_result(result, response_time=12, tier="premium", language="go")
    assert payload.model_dump(by_alias=True) == {
        "content": "c",
        "model": "m",
        "tokensUsed": 3,
        "promptTokens": 1,
        "completionTokens": 2,
        "responseTime": 12,
        "tier": "premium",
        "language": "go",
    }


def test_error_payload_omits_unset_fields():
    assert make_error_payload(error="dispatch_error", message="boom") == {"error": "dispatch_error", "message": "boom"}
    assert make_error_payload(error="dispatch_error", message="boom", response_time=5)["responseTime"] == 5


def test_tier_scalars_are_coerced_for_permissive_resolution():
    assert ChatRequest.model_validate({"messages": [{"role": "user", "content": "hi"}], "tier": None}).tier == "free"
    assert ChatRequest.model_validate({"messages": [{"role": "user", "content": "hi"}], "tier": 3}).tier == "3"
    assert CodeRequest.model_validate({"prompt": "x", "tier": 2}).tier == "2"
    with pytest.raises(ValidationError):
        CodeRequest.model_validate({"prompt": "x", "tier": None})
