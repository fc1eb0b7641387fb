from .app import AppBuilder, build_bridge_app
from .bridge import StreamBridge
from .config import BridgeConfig
from .heartbeat import HeartbeatScheduler
from .normalizer import FrameNormalizer
from .registry import SessionRegistry
from .rpc import RPCCorrelator
from .transport import StreamSink
from .upstream import UpstreamClient
from .version import __version__

__all__ = [
    "AppBuilder",
    "BridgeConfig",
    "FrameNormalizer",
    "HeartbeatScheduler",
    "RPCCorrelator",
    "SessionRegistry",
    "StreamBridge",
    "StreamSink",
    "UpstreamClient",
    "__version__",
    "build_bridge_app",
]
