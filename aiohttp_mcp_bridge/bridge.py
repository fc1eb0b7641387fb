import asyncio
import logging
from http import HTTPStatus

import aiohttp
import anyio
from aiohttp import web
from aiohttp_sse import sse_response
from mcp.types import Implementation

from .exceptions import SinkClosedError, UpstreamConnectError, UpstreamUnavailableError
from .heartbeat import HeartbeatScheduler
from .normalizer import FrameNormalizer
from .registry import SessionRegistry
from .transport import StreamSink
from .types import SSE_SEPARATOR, JSONObject
from .upstream import UpstreamClient, UpstreamStream

__all__ = ["ADVERTISED_METHODS", "StreamBridge"]

logger = logging.getLogger(__name__)

ADVERTISED_METHODS = ["initialize", "tools/list", "tools/invoke"]


class StreamBridge:
    """Bridges a client SSE subscription to one upstream stream.

    The client connection outlives the upstream stream: when upstream ends, a
    re-initialization event is sent and heartbeats keep the connection open
    until the client goes away.
    """

    __slots__ = ("_heartbeat", "_normalizer", "_registry", "_server_info", "_upstream")

    def __init__(
        self,
        upstream: UpstreamClient,
        registry: SessionRegistry,
        heartbeat: HeartbeatScheduler,
        server_info: Implementation,
        normalizer: FrameNormalizer | None = None,
    ) -> None:
        self._upstream = upstream
        self._registry = registry
        self._heartbeat = heartbeat
        self._server_info = server_info
        self._normalizer = normalizer or FrameNormalizer()

    def reinitialize_message(self, session_id: str) -> JSONObject:
        """Build the initialize-shaped result sent when the upstream stream ends."""
        return {
            "jsonrpc": "2.0",
            "id": session_id,
            "result": {
                "server_info": self._server_info.model_dump(exclude_none=True),
                "capabilities": {
                    "methods": list(ADVERTISED_METHODS),
                    "tools": {},
                },
            },
        }

    async def handle_stream(self, request: web.Request) -> web.StreamResponse:
        """Serve a client stream subscription."""
        session_id = request.query.get("id") or self._registry.new_session_id()
        logger.info("Opening stream for session %s", session_id)

        try:
            upstream = await self._upstream.open_stream(session_id)
        except UpstreamConnectError as err:
            logger.error("Upstream refused stream for session %s: %s", session_id, err)
            return web.Response(
                text=f"Error connecting to upstream: {err.status}",
                status=HTTPStatus.BAD_GATEWAY,
            )
        except UpstreamUnavailableError:
            logger.exception("Connection error for session %s", session_id)
            return web.Response(text="Server error", status=HTTPStatus.INTERNAL_SERVER_ERROR)

        async with upstream, sse_response(request, sep=SSE_SEPARATOR) as response:
            sink = StreamSink(session_id, response)
            await self._registry.register(session_id, sink)
            try:
                await self._serve(upstream, sink)
            finally:
                sink.close()
                with anyio.CancelScope(shield=True):
                    await self._registry.remove(session_id, sink)
                logger.info("Client disconnected for session %s", session_id)
        return response

    async def _serve(self, upstream: UpstreamStream, sink: StreamSink) -> None:
        """Run the upstream pump and the heartbeat until the client goes away."""
        async with anyio.create_task_group() as tg:

            async def keep_alive() -> None:
                await self._heartbeat.run(sink)
                # The heartbeat only stops once the client is gone
                tg.cancel_scope.cancel()

            tg.start_soon(keep_alive)
            tg.start_soon(self._pump, upstream, sink)

    async def _pump(self, upstream: UpstreamStream, sink: StreamSink) -> None:
        """Forward normalized upstream output to the sink."""
        session_id = upstream.session_id
        try:
            if upstream.is_json:
                # Upstream answered with one JSON document, forward it and stay open
                body = await upstream.read_text()
                if body.strip():
                    await sink.send_frame(self._normalizer.normalize_document(body))
                logger.info("Converted upstream JSON answer to SSE for session %s", session_id)
                return

            async for chunk in upstream.iter_text():
                for frame in self._normalizer.normalize(chunk):
                    await sink.send_frame(frame)

            logger.info("Upstream stream ended for session %s, keeping client connection open", session_id)
            await sink.send_message(self.reinitialize_message(session_id))
        except SinkClosedError:
            logger.debug("Client stream closed while forwarding for session %s", session_id)
        except (aiohttp.ClientError, asyncio.TimeoutError):
            logger.exception("Upstream stream error for session %s, keeping client connection open", session_id)
