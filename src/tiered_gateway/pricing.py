from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from .tiering import Tier

PRICE_CURRENCY = "SOL"


@dataclass(frozen=True)
class RoutePrice:
    """Price the external payment gate charges before a request reaches us."""

    path: str
    method: str
    price: float
    tier: Tier

    def as_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["tier"] = self.tier.value
        out["currency"] = PRICE_CURRENCY
        return out


ROUTE_PRICES: tuple[RoutePrice, ...] = (
    RoutePrice("/api/ai/chat", "POST", 0.0, Tier.FREE),
    RoutePrice("/api/ai/code", "POST", 0.001, Tier.PREMIUM),
    RoutePrice("/api/ai/analyze", "POST", 0.001, Tier.PREMIUM),
    RoutePrice("/api/ai/generate", "POST", 0.005, Tier.ULTRA_PREMIUM),
    RoutePrice("/api/ai/vision", "POST", 0.01, Tier.ENTERPRISE),
)
