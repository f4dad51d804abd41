from .config import GatewayConfig
from .contracts import ModelRequest, ModelResult, StreamChunk
from .dispatcher import Dispatcher, FallbackChainStrategy, SingleModelStrategy, build_dispatcher
from .handlers import CapabilityHandlers
from .tiering import Capability, Tier, TierPolicy

__all__ = [
    "Capability",
    "CapabilityHandlers",
    "Dispatcher",
    "FallbackChainStrategy",
    "GatewayConfig",
    "ModelRequest",
    "ModelResult",
    "SingleModelStrategy",
    "StreamChunk",
    "Tier",
    "TierPolicy",
    "build_dispatcher",
]
