from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType


class Tier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"
    ULTRA_PREMIUM = "ultra-premium"
    ENTERPRISE = "enterprise"

    @classmethod
    def parse(cls, value: str | None) -> "Tier":
        """Resolve a caller-supplied tier; anything unrecognized degrades to FREE."""
        try:
            return cls(value)
        except ValueError:
            return cls.FREE


class Capability(str, Enum):
    CHAT = "chat"
    CODE = "code"
    ANALYZE = "analyze"
    GENERATE = "generate"
    VISION = "vision"


TIER_MODELS: Mapping[Tier, str] = MappingProxyType(
    {
        Tier.FREE: "mistralai/mistral-7b-instruct:free",
        Tier.PREMIUM: "openai/gpt-4o-mini",
        Tier.ULTRA_PREMIUM: "anthropic/claude-3.5-sonnet",
        Tier.ENTERPRISE: "anthropic/claude-3.7-sonnet",
    }
)

VISION_MODELS: Mapping[Tier, str] = MappingProxyType(
    {
        Tier.FREE: "google/gemini-2.0-flash-exp:free",
        Tier.PREMIUM: "openai/gpt-4o-mini",
        Tier.ULTRA_PREMIUM: "anthropic/claude-3.5-sonnet",
        Tier.ENTERPRISE: "anthropic/claude-3.7-sonnet",
    }
)

FREE_MODEL_FALLBACKS: tuple[str, ...] = (
    "mistralai/mistral-7b-instruct:free",
    "google/gemini-2.0-flash-exp:free",
    "nousresearch/hermes-3-llama-3.1-405b:free",
    "microsoft/phi-3-mini-128k-instruct:free",
)


@dataclass(frozen=True)
class TierPolicy:
    """Static tier -> model mapping. Never mutated after construction."""

    models: Mapping[Tier, str] = field(default_factory=lambda: TIER_MODELS)
    vision_models: Mapping[Tier, str] = field(default_factory=lambda: VISION_MODELS)
    free_fallbacks: tuple[str, ...] = FREE_MODEL_FALLBACKS

    def model_for(self, tier: str | Tier | None, capability: Capability = Capability.CHAT) -> str:
        resolved = Tier.parse(tier)
        if capability is Capability.VISION:
            return self.vision_models.get(resolved, self.vision_models[Tier.FREE])
        return self.models.get(resolved, self.models[Tier.FREE])

    def fallback_chain_for(self, tier: str | Tier | None, capability: Capability = Capability.CHAT) -> tuple[str, ...]:
        if capability is Capability.VISION:
            return ()
        if Tier.parse(tier) is Tier.FREE:
            return self.free_fallbacks
        return ()

    def candidates_for(self, tier: str | Tier | None, capability: Capability = Capability.CHAT) -> tuple[str, ...]:
        chain = self.fallback_chain_for(tier, capability)
        if chain:
            return chain
        return (self.model_for(tier, capability),)


DEFAULT_POLICY = TierPolicy()
