import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from http import HTTPStatus

from aiohttp import web
from mcp.types import Implementation

from .bridge import StreamBridge
from .config import BridgeConfig
from .heartbeat import HeartbeatScheduler
from .registry import SessionRegistry
from .rpc import RPCCorrelator
from .upstream import UpstreamClient

__all__ = ["AppBuilder", "build_bridge_app"]

logger = logging.getLogger(__name__)

STREAM_PATH = "/stream"
RPC_PATH = "/jsonrpc"
# Older clients connect through these paths
LEGACY_STREAM_PATH = "/raw-sse"
LEGACY_RPC_PATH = "/raw-sse/jsonrpc"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def error_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Turn unmatched routes and unexpected failures into JSON errors."""
    try:
        return await handler(request)
    except (web.HTTPNotFound, web.HTTPMethodNotAllowed):
        logger.info("Not found: %s %s", request.method, request.path_qs)
        return web.json_response({"error": "Not found"}, status=HTTPStatus.NOT_FOUND)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("Unhandled error for %s %s", request.method, request.path_qs)
        return web.json_response({"error": "Server error"}, status=HTTPStatus.INTERNAL_SERVER_ERROR)


@web.middleware
async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    """Answer CORS pre-flight requests without reaching the handlers."""
    if request.method == "OPTIONS":
        return web.Response(status=HTTPStatus.OK)
    return await handler(request)


async def add_cors_headers(request: web.Request, response: web.StreamResponse) -> None:
    # Runs on prepare, so streamed responses get the headers too
    response.headers.update(CORS_HEADERS)


class AppBuilder:
    """Aiohttp application builder for the bridge."""

    __slots__ = ("_bridge", "_config", "_correlator", "_registry", "_started_at", "_upstream")

    def __init__(self, config: BridgeConfig) -> None:
        self._config = config
        self._registry = SessionRegistry()
        self._upstream = UpstreamClient(
            stream_url=config.upstream_stream_url,
            rpc_url=config.upstream_rpc_url,
            rpc_timeout=config.rpc_timeout,
            connect_timeout=config.connect_timeout,
        )
        self._bridge = StreamBridge(
            upstream=self._upstream,
            registry=self._registry,
            heartbeat=HeartbeatScheduler(config.heartbeat_interval),
            server_info=Implementation(name=config.server_name, version=config.server_version),
        )
        self._correlator = RPCCorrelator(
            upstream=self._upstream,
            registry=self._registry,
            fallback_session_id=config.fallback_session_id,
        )
        self._started_at = time.monotonic()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    def build(self) -> web.Application:
        """Build the bridge application."""
        app = web.Application(middlewares=[error_middleware, cors_middleware])
        app.on_response_prepare.append(add_cors_headers)
        app.cleanup_ctx.append(self._upstream_ctx)
        self.setup_routes(app)
        return app

    def setup_routes(self, app: web.Application) -> None:
        """Setup routes for the stream, JSON-RPC and health check endpoints."""
        app.router.add_get(STREAM_PATH, self._bridge.handle_stream)
        app.router.add_get(LEGACY_STREAM_PATH, self._bridge.handle_stream)
        app.router.add_post(RPC_PATH, self._correlator.handle_rpc)
        app.router.add_post(LEGACY_RPC_PATH, self._correlator.handle_rpc)
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/ping", self.ping_handler)
        app.router.add_get("/info", self.info_handler)

    async def _upstream_ctx(self, app: web.Application) -> AsyncIterator[None]:
        async with self._upstream:
            yield

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.Response(text="OK")

    async def ping_handler(self, request: web.Request) -> web.Response:
        return web.Response(text="pong")

    async def info_handler(self, request: web.Request) -> web.Response:
        """Return the static configuration, for debugging."""
        return web.json_response(
            {
                "stream_endpoint": STREAM_PATH,
                "jsonrpc_endpoint": RPC_PATH,
                "upstream_stream_url": self._config.upstream_stream_url,
                "upstream_jsonrpc_url": self._config.upstream_rpc_url,
                "uptime": round(time.monotonic() - self._started_at, 3),
                "active_sessions": len(self._registry),
            }
        )


def build_bridge_app(config: BridgeConfig) -> web.Application:
    """Build the bridge application."""
    return AppBuilder(config).build()
